"""Hardware-facing pieces: pin capability map, command protocol and transports."""
