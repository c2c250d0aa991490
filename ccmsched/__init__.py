"""ccmsched — background scheduler for configuration-management tasks."""

__version__ = "0.3.2"
