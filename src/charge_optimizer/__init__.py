"""Hourly battery charge scheduling for HomeWizard plug-in batteries."""

__version__ = "0.1.0"
