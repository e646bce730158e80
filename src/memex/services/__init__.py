"""Read-side services: statistics, project context and session views."""
