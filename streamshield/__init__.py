"""StreamShield: keep shielded listening out of your Spotify taste profile."""

__version__ = "0.1.0"
