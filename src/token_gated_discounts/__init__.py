"""Token-gated discount eligibility and selection."""

__version__ = "0.1.0"
