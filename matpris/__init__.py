"""matpris - ingredient price scraper for Norwegian online grocery stores."""

__version__ = "2.0.0"
