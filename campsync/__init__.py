"""campsync: offline-first sync for journal entries, projects and todos."""

__version__ = "0.1.0"
