"""Abstract battery actions and the HomeWizard mode vocabulary."""

from charge_optimizer.device.modes import Action, DeviceMode, translate_action

__all__ = ["Action", "DeviceMode", "translate_action"]
