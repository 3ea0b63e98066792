"""chatgate: policy-gated chat intent router and priority notification gate."""

__version__ = "0.4.0"
