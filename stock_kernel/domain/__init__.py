"""Pure domain layer: value enums, DTOs, lifecycle rules, clock.  Zero I/O."""
