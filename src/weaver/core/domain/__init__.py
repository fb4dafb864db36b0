"""Domain logic: models, errors, tool client, analysis, execution and session."""
