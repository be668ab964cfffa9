"""Pure domain layer: values, state machines, DTOs and the clock."""
