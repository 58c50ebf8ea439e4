"""SpecZero: feature-driven DAG planning and execution for architecture specs."""

__version__ = "2.1.0"
