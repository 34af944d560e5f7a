"""ArticleHarvest: deadline-bounded article extraction."""

__version__ = "0.1.0"
