"""SQLite storage for the action queue, trace and schedules."""
