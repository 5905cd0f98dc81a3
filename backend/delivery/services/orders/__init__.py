"""Order store, state machine, claim coordination and delivery verification."""
