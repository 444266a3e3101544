"""MIFARE Classic and MIFARE DESFire command sets over a pluggable NFC device interface."""

__version__ = "0.1.0"