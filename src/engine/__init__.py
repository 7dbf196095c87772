"""State engine: locking, state storage, dependency graph, planning, execution."""
