"""Turn orchestration, action framework, errors and structured logs."""
