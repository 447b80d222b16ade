"""pinlink - GPIO command gateway for remote microcontrollers."""

__version__ = "0.1.0"
__logo__ = "📌"
