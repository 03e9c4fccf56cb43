"""InspectOS Lifecycle — task and hazard state machines."""
