"""Host-side decoder for defmt-encoded firmware logs."""

__version__ = "0.2.1"

# Version of the defmt wire format this decoder was written against.
DEFMT_VERSION = "0.2"
