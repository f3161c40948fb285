"""Core infrastructure components for lab-provisioner.

Provider connections live in ``lab_provisioner.core.provider`` and are not
re-exported here, so importing the engine never pulls in a provider SDK.
"""

from lab_provisioner.core.state import ResourceInstance, State

__all__ = ["ResourceInstance", "State"]
