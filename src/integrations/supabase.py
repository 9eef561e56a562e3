"""Supabase client for database operations."""
import asyncio
from typing import Any, Dict, Optional

import httpx
from supabase import Client, create_client

from src.config import settings
from src.exceptions import ContractException, ErrorCode, TransientInfraException
from src.utils.logger import log


class SupabaseClient:
    """Thin wrapper around the sync supabase client.

    The client is created on first use so the app can import without
    credentials. Queries run in a worker thread so each store call is a
    suspension point for the event loop.
    """

    def __init__(self):
        self._client: Optional[Client] = None

    @property
    def client(self) -> Client:
        if self._client is None:
            if not settings.supabase_url or not settings.supabase_service_role_key:
                raise ContractException(
                    "Supabase backend selected but SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY are not set",
                    error_code=ErrorCode.CONFIGURATION_ERROR,
                )
            self._client = create_client(
                settings.supabase_url,
                settings.supabase_service_role_key
            )
            log.info("Supabase client initialized")
        return self._client

    def table(self, name: str):
        return self.client.table(name)

    async def execute(self, query: Any, operation: str) -> Any:
        """Run a built query, mapping network failures to transient errors."""
        try:
            return await asyncio.to_thread(query.execute)
        except (httpx.TransportError, ConnectionError, TimeoutError) as e:
            log.warning(f"⚠️ Supabase {operation} failed: {e}")
            raise TransientInfraException(operation, original_exception=e) from e

    async def rpc(self, function: str, params: Dict[str, Any]) -> Any:
        """Call a Postgres function through PostgREST."""
        return await self.execute(self.client.rpc(function, params), f"rpc:{function}")


# Global instance
supabase_client = SupabaseClient()
