"""Security controls for the proxy.

- Audio target allow-list (the proxy must not become an open relay)
"""

from solara_proxy.security.hostallow import (
    HostAllowList,
    TargetCheckResult,
    create_host_allow_list,
)

__all__ = [
    "HostAllowList",
    "TargetCheckResult",
    "create_host_allow_list",
]
