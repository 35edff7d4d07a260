"""Agent process lifecycle: parsing, registry, queueing and draining."""
