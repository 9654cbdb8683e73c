"""Domain layer for stacker_lite: intents, mutation plans, storage and orchestration."""
