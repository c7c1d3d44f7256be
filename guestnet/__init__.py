"""
Hotel Guest Network Provisioner

Issues and revokes hotspot credentials for hotel guests on a MikroTik
router through the RouterOS API, keeping a local record of every
credential consistent with the router's live state.
"""

__version__ = "0.1.0"
