"""Pre-kickoff notification scheduling and reconciliation against Braze."""
