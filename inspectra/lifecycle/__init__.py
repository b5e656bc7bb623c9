"""Instance lifecycle: state machine, audit events and signatures."""
