"""AI flyer design pipeline: prompt composition, markup generation, headless rendering and credits."""

__version__ = "1.0.0"
