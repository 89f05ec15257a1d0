"""Pure domain layer: value objects, pricing, penalty policy and SLA math. Zero I/O."""
