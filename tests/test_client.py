"""Tests for the Supabase backend manager."""

from unittest.mock import Mock, patch

import pytest

from supabase_mcp.client import SupabaseManager


class TestSupabaseManagerInit:
    """Test credential validation and derived URLs."""

    def test_init_cloud_url(self):
        """Test a cloud project URL is accepted."""
        manager = SupabaseManager("https://abc.supabase.co", "anon-key")

        assert manager.supabase_url == "https://abc.supabase.co"
        assert manager.client is None

    def test_init_self_hosted_http_url(self):
        """Test plain HTTP self-hosted URLs are accepted."""
        manager = SupabaseManager("http://localhost:8000/", "anon-key")

        assert manager.supabase_url == "http://localhost:8000"
        assert manager.functions_url == "http://localhost:8000/functions/v1"
        assert manager.function_endpoint("hello") == "http://localhost:8000/functions/v1/hello"
        assert manager.dashboard_url == "http://localhost:8000/project/_/functions"

    def test_rest_suffix_stripped_from_urls(self):
        """Test a REST base URL still yields the functions endpoint."""
        manager = SupabaseManager("https://db.example.com/rest", "anon-key")
        assert manager.functions_url == "https://db.example.com/functions/v1"

    def test_init_invalid_credentials(self):
        """Test missing or malformed credentials raise ValueError."""
        with pytest.raises(ValueError, match="SUPABASE_URL is required"):
            SupabaseManager("", "key")
        with pytest.raises(ValueError, match="SUPABASE_ANON_KEY is required"):
            SupabaseManager("https://abc.supabase.co", "  ")
        with pytest.raises(ValueError, match="HTTP or HTTPS"):
            SupabaseManager("ftp://abc.supabase.co", "key")


class TestSupabaseManagerClient:
    """Test lazy client creation."""

    @patch("supabase_mcp.client.create_client")
    def test_get_client_initializes_once(self, mock_create_client):
        """Test the client is created on first use and reused."""
        mock_create_client.return_value = Mock()
        manager = SupabaseManager("https://abc.supabase.co", "anon-key")

        first = manager.get_client()
        second = manager.get_client()

        assert first is second
        mock_create_client.assert_called_once_with("https://abc.supabase.co", "anon-key")

    @patch("supabase_mcp.client.create_client")
    def test_initialize_failure(self, mock_create_client):
        """Test client creation errors become RuntimeError."""
        mock_create_client.side_effect = Exception("bad key")
        manager = SupabaseManager("https://abc.supabase.co", "anon-key")

        with pytest.raises(RuntimeError, match="initialization failed"):
            manager.get_client()


class TestRemoteInvocation:
    """Test remote function invocation."""

    @patch("supabase_mcp.client.create_client")
    def test_invoke_decodes_json(self, mock_create_client):
        """Test JSON responses are decoded."""
        mock_client = Mock()
        mock_client.functions.invoke.return_value = b'{"message": "hi"}'
        mock_create_client.return_value = mock_client
        manager = SupabaseManager("https://abc.supabase.co", "anon-key")

        result = manager.invoke_remote_function("hello", {"name": "Ada"}, {"X-Test": "1"})

        assert result == {"data": {"message": "hi"}, "error": None}
        mock_client.functions.invoke.assert_called_once_with(
            "hello",
            invoke_options={"headers": {"X-Test": "1"}, "body": {"name": "Ada"}}
        )

    @patch("supabase_mcp.client.create_client")
    def test_invoke_plain_text(self, mock_create_client):
        """Test non-JSON responses are returned as text."""
        mock_client = Mock()
        mock_client.functions.invoke.return_value = b"plain text"
        mock_create_client.return_value = mock_client
        manager = SupabaseManager("https://abc.supabase.co", "anon-key")

        result = manager.invoke_remote_function("hello")

        assert result["data"] == "plain text"
        mock_client.functions.invoke.assert_called_once_with("hello", invoke_options={"headers": {}})

    @patch("supabase_mcp.client.create_client")
    def test_invoke_error(self, mock_create_client):
        """Test remote errors are reported, not raised."""
        mock_client = Mock()
        mock_client.functions.invoke.side_effect = Exception("Function not found")
        mock_create_client.return_value = mock_client
        manager = SupabaseManager("https://abc.supabase.co", "anon-key")

        result = manager.invoke_remote_function("missing", {})

        assert result == {"data": None, "error": "Function not found"}
