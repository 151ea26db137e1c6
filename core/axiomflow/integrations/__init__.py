"""Integration connector collaborators."""

from axiomflow.integrations.connector import (
    ConnectorAuthError,
    ConnectorError,
    IntegrationConnector,
    RecordedCall,
    RecordingConnector,
    TransientConnectorError,
)
from axiomflow.integrations.nango import NangoConnector, connection_id

__all__ = [
    "ConnectorAuthError",
    "ConnectorError",
    "IntegrationConnector",
    "NangoConnector",
    "RecordedCall",
    "RecordingConnector",
    "TransientConnectorError",
    "connection_id",
]
