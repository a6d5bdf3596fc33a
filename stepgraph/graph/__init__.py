"""Graph structures: channels, nodes, edges, routing, interrupts and the step scheduler."""
