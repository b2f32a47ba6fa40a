from charge_optimizer.lib.homewizard import HomeWizardClient
from charge_optimizer.lib.zonneplan import ZonneplanClient

__all__ = ["HomeWizardClient", "ZonneplanClient"]
