"""Payment services: state machine, persistence, validation, orchestration and reconciliation."""
