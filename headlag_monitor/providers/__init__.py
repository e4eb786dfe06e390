from headlag_monitor.providers.base import FrameType, StreamClient, StreamState
from headlag_monitor.providers.codex import CodexEventsStream, CodexLaunchpadStream
from headlag_monitor.providers.geckoterminal import GeckoTerminalStream
from headlag_monitor.providers.mobula import MobulaPulseStream, MobulaTradeStream

__all__ = [
    "CodexEventsStream",
    "CodexLaunchpadStream",
    "FrameType",
    "GeckoTerminalStream",
    "MobulaPulseStream",
    "MobulaTradeStream",
    "StreamClient",
    "StreamState",
]
