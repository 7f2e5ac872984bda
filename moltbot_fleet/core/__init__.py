"""Instance registry and fleet orchestration core."""
