"""Pure domain layer: lifecycle tables, authorization policy, formatting, ports."""
