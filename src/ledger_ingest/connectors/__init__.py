"""Reference source adapters, one per upstream ledger."""

from .dydx_connector import DydxConnector
from .kaspa_connector import KaspaConnector
from .osmosis_connector import OsmosisConnector
from .xrpl_connector import XrplConnector

__all__ = ["DydxConnector", "KaspaConnector", "OsmosisConnector", "XrplConnector"]
