"""Backend connection management for the Supabase MCP Server.

``SupabaseManager`` wraps the supabase-py client for a cloud or self-hosted
instance. The edge tools use it to derive public URLs and to invoke functions
that live on the remote instance rather than in the local registry.
"""

import json
import logging
import sys
from typing import Any, Dict, Optional

from supabase import Client, create_client

# Configure logging to stderr only (never stdout - corrupts MCP JSON-RPC)
logging.basicConfig(stream=sys.stderr, level=logging.INFO)
logger = logging.getLogger("supabase-mcp.client")


class SupabaseManager:
    """Manages the Supabase client connection and remote function calls."""

    def __init__(self, supabase_url: str, supabase_key: str):
        """Initialize Supabase manager.

        Args:
            supabase_url: Supabase project or self-hosted instance URL
            supabase_key: Supabase API key (anon or service role)
        """
        self.supabase_url = supabase_url.rstrip("/") if supabase_url else supabase_url
        self.supabase_key = supabase_key
        self.client: Optional[Client] = None

        self._validate_credentials()
        logger.info("SupabaseManager initialized successfully")

    def _validate_credentials(self) -> None:
        """Validate Supabase credentials."""
        if not self.supabase_url or not self.supabase_url.strip():
            raise ValueError("SUPABASE_URL is required")

        if not self.supabase_key or not self.supabase_key.strip():
            raise ValueError("SUPABASE_ANON_KEY is required")

        # Self-hosted instances are commonly served over plain HTTP
        if not self.supabase_url.startswith(("https://", "http://")):
            raise ValueError("SUPABASE_URL must be an HTTP or HTTPS URL")

        if ".supabase.co" not in self.supabase_url:
            logger.info("SUPABASE_URL does not point at supabase.co, assuming a self-hosted instance")

    @property
    def base_url(self) -> str:
        return self.supabase_url.replace("/rest", "")

    @property
    def functions_url(self) -> str:
        return f"{self.base_url}/functions/v1"

    @property
    def dashboard_url(self) -> str:
        return f"{self.base_url}/project/_/functions"

    def function_endpoint(self, function_name: str) -> str:
        return f"{self.functions_url}/{function_name}"

    def initialize(self) -> None:
        """Initialize Supabase client connection."""
        try:
            self.client = create_client(self.supabase_url, self.supabase_key)
            logger.info("Supabase client initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {e}")
            raise RuntimeError(f"Supabase client initialization failed: {str(e)}")

    def get_client(self) -> Client:
        """Get Supabase client, initializing if needed.

        Returns:
            Supabase client instance

        Raises:
            RuntimeError: If client initialization fails
        """
        if not self.client:
            self.initialize()

        if not self.client:
            raise RuntimeError("Failed to initialize Supabase client")

        return self.client

    def invoke_remote_function(
        self,
        function_name: str,
        payload: Any = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """Invoke a function deployed on the remote instance.

        Args:
            function_name: Name of the remote function
            payload: Request body
            headers: Extra request headers

        Returns:
            Dict with 'data' and 'error'; exactly one of them is set
        """
        invoke_options: Dict[str, Any] = {"headers": dict(headers or {})}
        if payload is not None:
            invoke_options["body"] = payload

        try:
            client = self.get_client()
            raw = client.functions.invoke(function_name, invoke_options=invoke_options)
        except Exception as e:
            logger.error(f"Remote invocation of '{function_name}' failed: {e}")
            return {"data": None, "error": str(e)}

        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                pass

        logger.info(f"Remote function '{function_name}' invoked successfully")
        return {"data": raw, "error": None}
