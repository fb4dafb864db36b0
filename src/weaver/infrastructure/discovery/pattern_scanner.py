"""
Pattern Scanner

Finds integration candidates in free text (a README, a web page, chat notes)
with regular expressions:

- GitHub repositories:   github.com/<owner>/<repo>
- PyPI packages:         pypi.org/project/<name>, `pip install <name>`
- npm packages:          npmjs.com/package/<name>, `npm install <name>`
- OpenAPI documents:     URLs ending in openapi/swagger .json/.yaml

Results keep first-seen order and are deduplicated by resource id.
"""

import re

import structlog

from weaver.core.domain.models import Resource, ResourceKind

logger = structlog.get_logger()

_GITHUB = re.compile(
    r"github\.com/(?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+?)(?:\.git)?(?=[/\s)\]\"'#?]|$)"
)
_PYPI_URL = re.compile(r"pypi\.org/project/(?P<name>[A-Za-z0-9_.-]+)")
_PIP_INSTALL = re.compile(r"pip3? install (?P<name>[A-Za-z0-9_.-]+)(?:\[[^\]]*\])?")
_NPM_URL = re.compile(r"npmjs\.com/package/(?P<name>(?:@[a-z0-9_.-]+/)?[a-z0-9_.-]+)")
_NPM_INSTALL = re.compile(r"npm (?:install|i) (?P<name>(?:@[a-z0-9_.-]+/)?[a-z0-9_.-]+)")
_OPENAPI = re.compile(
    r"(?P<url>https?://[^\s)\"'\]]+?(?:openapi|swagger)[^\s)\"'\]]*?\.(?:json|ya?ml))"
)


def _find(
    text: str,
) -> list[tuple[int, ResourceKind, str, dict[str, str]]]:
    found = []

    for match in _GITHUB.finditer(text):
        repo = match["repo"].rstrip(".")
        if not repo:
            continue
        locator = f"github.com/{match['owner']}/{repo}"
        found.append((match.start(), ResourceKind.REPOSITORY, locator, {"source": "github"}))

    for pattern in (_PYPI_URL, _PIP_INSTALL):
        for match in pattern.finditer(text):
            name = match["name"].lower()
            if name.startswith("-"):
                continue
            found.append(
                (match.start(), ResourceKind.PACKAGE, f"pypi:{name}", {"ecosystem": "pypi"})
            )

    for pattern in (_NPM_URL, _NPM_INSTALL):
        for match in pattern.finditer(text):
            name = match["name"]
            if name.startswith("-"):
                continue
            found.append(
                (match.start(), ResourceKind.PACKAGE, f"npm:{name}", {"ecosystem": "npm"})
            )

    for match in _OPENAPI.finditer(text):
        found.append((match.start(), ResourceKind.API, match["url"], {"format": "openapi"}))

    return sorted(found, key=lambda item: item[0])


def scan_text(text: str) -> list[Resource]:
    """
    Extract resources from text.

    Args:
        text: Arbitrary text

    Returns:
        Resources in order of first appearance, without duplicates
    """
    resources: list[Resource] = []
    seen: set[str] = set()

    for position, kind, locator, context in _find(text):
        resource = Resource(
            id=f"{kind.value}:{locator}",
            kind=kind,
            locator=locator,
            discovery_context={**context, "offset": position},
        )
        if resource.id in seen:
            continue
        seen.add(resource.id)
        resources.append(resource)

    logger.debug("scan_completed", resources=len(resources))
    return resources
