"""Sources, change watching and the sync orchestrator."""
