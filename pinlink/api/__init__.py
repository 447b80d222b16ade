"""HTTP control surface for the GPIO gateway."""
