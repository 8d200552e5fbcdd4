"""Plan generation, validation and resilient execution of dependency-ordered agent tasks."""

__version__ = "0.1.0"
