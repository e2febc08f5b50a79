"""fscrape command line interface."""
