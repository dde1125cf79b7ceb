"""Security incident triage: streaming categorization, recommendations and analysis runs."""

__version__ = "0.1.0"
