"""vmdeploy - single Azure Linux VM provisioning CLI

vmdeploy provisions, updates and tears down one Azure VM with NSG rules,
Entra ID console access, metric alerts and optional customer-managed-key
encryption, and relays files onto it through a temporary blob container.
No storage account keys are used: blob access goes through user delegation
SAS tokens.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
