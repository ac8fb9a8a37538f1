"""CRM deals API integration (HubSpot v3).

Provides CrmClient for deal reads and allow-listed property updates, and
the typed payloads it exchanges: DealProperties (outbound allow-list),
DealSnapshot (inbound view) and CrmResult (classified call outcome).
"""

from src.dealsync.sync.crm.client import CrmClient
from src.dealsync.sync.crm.schemas import CrmResult, CrmStatus, DealProperties, DealSnapshot

__all__ = [
    "CrmClient",
    "CrmResult",
    "CrmStatus",
    "DealProperties",
    "DealSnapshot",
]
