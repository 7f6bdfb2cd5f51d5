"""Service clients"""

from rescue_core_lib.clients.base import BaseServiceClient
from rescue_core_lib.clients.case_store_client import CaseStoreClient

__all__ = ["BaseServiceClient", "CaseStoreClient"]
