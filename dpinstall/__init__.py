"""Resumable host installer for the DL/DA data-processor virtual machines."""

__version__ = '0.3.0'
