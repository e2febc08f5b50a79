"""fscrape - resumable, rate-limited forum scraping sessions."""

__version__ = "0.1.0"
