from .node import Node, NodeStatus, NodeType, RewardTier
from .connection import Connection, ConnectionStatus
from .account import Account, RewardClaim
from .tunnel_config import TunnelConfig
from .app_setting import AppSetting

__all__ = [
    "Node",
    "NodeStatus",
    "NodeType",
    "RewardTier",
    "Connection",
    "ConnectionStatus",
    "Account",
    "RewardClaim",
    "TunnelConfig",
    "AppSetting",
]
