"""Pipeline core: workspace, storage handles, state machine, orchestrator."""
