"""Protocol interfaces (ports) of the orchestration core."""
