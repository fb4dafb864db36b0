"""
Analysis Stage Prompts

Prompts sent to the inference capability by the analysis stages:
- RESEARCH_SUMMARY_PROMPT: Condense raw research facts about a resource
- PLAN_PROMPT: Turn research facts and user intent into an ordered step DAG
- SECURITY_REVIEW_PROMPT: Review a plan before it is offered for confirmation

Every prompt asks for a single JSON object. The structured context (resource,
facts, plan) travels next to the prompt, never inside it.
"""

RESEARCH_SUMMARY_PROMPT = """
# Resource Research Summary

You receive facts collected by tool providers about one software resource
(repository, package or API) in `context.research_facts`.

Summarize what matters for integrating it into the project described in
`context.project_context`:
- primary language and runtime requirements
- installation method
- whether the resource ships tests
- license and maintenance signals

Respond with a JSON object:
{
  "summary": "<two or three sentences>",
  "highlights": ["<short fact>", ...]
}
"""

PLAN_PROMPT = """
# Integration Planning

Produce an implementation plan that integrates the resource in
`context.resource` into the target project, following `context.user_intent`.

## Rules

1. Use only step kinds listed in `context.step_catalog`.
2. Give every step a unique `id`. Declare ordering with `depends_on`.
3. Mark a step `reversible: false` only when it cannot be undone.
   An irreversible step must come last unless every earlier step sets
   `isolated_compensation: true`.
4. Keep the plan minimal. Do not add steps the intent does not need.
5. `estimated_risk` is a number between 0 (trivial) and 1 (dangerous).

## Response Format

{
  "steps": [
    {
      "id": "install",
      "kind": "installDependency",
      "parameters": {"name": "example-lib"},
      "reversible": true,
      "depends_on": []
    }
  ],
  "estimated_risk": 0.2
}
"""

SECURITY_REVIEW_PROMPT = """
# Security Review

Review the plan in `context.plan` for the resource in `context.resource`.

Reject when the resource or any step could exfiltrate data, run untrusted
install scripts with elevated privileges, or weaken existing security controls.
Ask for human review when you are unsure.

Respond with a JSON object:
{
  "decision": "approved" | "rejected" | "needs_review",
  "reasons": ["<short reason>", ...]
}
"""
