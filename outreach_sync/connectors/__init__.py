"""
Platform connectors
"""
from outreach_sync.connectors.base import BaseConnector
from outreach_sync.connectors.phoneburner import PhoneBurnerConnector
from outreach_sync.connectors.replyio import ReplyioConnector
from outreach_sync.connectors.smartlead import SmartleadConnector
from outreach_sync.utils.exceptions import UnknownPlatform

CONNECTORS = {
    SmartleadConnector.platform: SmartleadConnector,
    ReplyioConnector.platform: ReplyioConnector,
    PhoneBurnerConnector.platform: PhoneBurnerConnector,
}


def get_connector(platform: str) -> BaseConnector:
    connector_cls = CONNECTORS.get(platform)
    if connector_cls is None:
        raise UnknownPlatform(f"Unknown platform: {platform}")
    return connector_cls()
