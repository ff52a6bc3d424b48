"""DocSync: keep document folders indexed for hybrid keyword and semantic search."""

__version__ = "0.1.0"
