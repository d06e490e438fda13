"""Translation pipeline core: planning, rotation, execution, alignment, checkpoints, orchestration."""
