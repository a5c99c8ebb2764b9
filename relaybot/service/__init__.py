"""Process wiring: builds the handler and runs the transport."""
