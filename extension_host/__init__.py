"""Extension host: resolve, cache, install, load and watch extensions"""

__version__ = "0.1.0"
