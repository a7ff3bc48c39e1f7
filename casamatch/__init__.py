"""CasaMatch - buyer/property matching, classification and deduplication engine"""

__version__ = "0.1.0"
