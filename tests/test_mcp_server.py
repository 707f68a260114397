"""Tests for MCP server functionality.

This module tests environment validation, configuration and the edge function
tools with a scratch registry and a mocked Supabase backend.
"""

import json
import os
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest

from supabase_mcp import mcp_server
from supabase_mcp.mcp_server import (
    create_json_response,
    edge_deploy_function,
    edge_invoke_function,
    edge_list_functions,
    edge_remove_function,
    get_config,
    get_supabase_manager,
    validate_environment,
)
from supabase_mcp.registry import FunctionRegistry

ADD_CODE = "def add(req):\n    return req.a + req.b\nadd"


@pytest.fixture
def registry(tmp_path):
    registry = FunctionRegistry(scratch_dir=tmp_path / "functions", timeout_seconds=10.0)
    with patch.object(mcp_server, "registry", registry):
        yield registry
    registry.close()


@pytest.fixture
def no_backend():
    with patch("supabase_mcp.mcp_server.get_supabase_manager", return_value=None):
        yield


class TestEnvironmentValidation:
    """Test environment variable validation and configuration."""

    @patch.dict(os.environ, {"SUPABASE_URL": "https://test.supabase.co", "SUPABASE_ANON_KEY": "test-key"})
    def test_validate_environment_success(self):
        """Test environment validation with valid variables."""
        validate_environment()

    @patch.dict(os.environ, {}, clear=True)
    def test_validate_environment_missing_vars(self):
        """Test environment validation fails with missing variables."""
        with pytest.raises(ValueError, match="Missing required environment variables"):
            validate_environment()

    @patch.dict(os.environ, {"SUPABASE_URL": "https://test.supabase.co"}, clear=True)
    def test_validate_environment_partial_vars(self):
        """Test environment validation fails with partial variables."""
        with pytest.raises(ValueError, match="SUPABASE_ANON_KEY"):
            validate_environment()

    @patch.dict(os.environ, {
        "LOG_LEVEL": "DEBUG",
        "MCP_SERVER_NAME": "test-server",
        "EDGE_FUNCTION_TIMEOUT_SECONDS": "5",
        "EDGE_FUNCTION_MAX_CODE_SIZE": "2048",
        "EDGE_FUNCTIONS_DIR": "/tmp/custom-functions",
        "EDGE_REMOTE_FALLBACK": "false",
        "DEBUG": "true"
    })
    def test_get_config_custom_values(self):
        """Test configuration retrieval with custom values."""
        config = get_config()

        assert config["log_level"] == "DEBUG"
        assert config["server_name"] == "test-server"
        assert config["timeout_seconds"] == 5.0
        assert config["max_code_size"] == 2048
        assert config["functions_dir"] == "/tmp/custom-functions"
        assert config["remote_fallback"] is False
        assert config["debug"] is True

    @patch.dict(os.environ, {}, clear=True)
    def test_get_config_default_values(self):
        """Test configuration retrieval with default values."""
        config = get_config()

        assert config["log_level"] == "INFO"
        assert config["server_name"] == "supabase-mcp"
        assert config["timeout_seconds"] == 30.0
        assert config["max_code_size"] == 100000
        assert config["functions_dir"].endswith("mcp-python-functions")
        assert config["remote_fallback"] is True
        assert config["debug"] is False


class TestSupabaseManagerFactory:
    """Test lazy creation of the backend manager."""

    @patch.dict(os.environ, {}, clear=True)
    def test_no_backend_configured(self):
        """Test None is returned without credentials."""
        with patch.object(mcp_server, "_supabase_manager", None):
            assert get_supabase_manager() is None

    @patch.dict(os.environ, {"SUPABASE_URL": "http://localhost:8000", "SUPABASE_ANON_KEY": "key"})
    def test_manager_created_and_cached(self):
        """Test the manager is created once from the environment."""
        with patch.object(mcp_server, "_supabase_manager", None):
            first = get_supabase_manager()
            assert first is get_supabase_manager()
            assert first.functions_url == "http://localhost:8000/functions/v1"

    @patch.dict(os.environ, {"SUPABASE_URL": "localhost", "SUPABASE_ANON_KEY": "key"})
    def test_invalid_url_disables_backend(self):
        """Test invalid credentials are logged and yield no manager."""
        with patch.object(mcp_server, "_supabase_manager", None):
            assert get_supabase_manager() is None


class TestResponseHelpers:
    """Test JSON response formatting."""

    def test_create_json_response_serializes_datetimes(self):
        """Test datetimes and unknown objects are serialized."""
        moment = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        text = create_json_response({"at": moment, "obj": object(), "n": 1})
        payload = json.loads(text)

        assert payload["at"] == "2024-01-02T03:04:05+00:00"
        assert payload["obj"].startswith("<object object")
        assert payload["n"] == 1


class TestEdgeDeployTool:
    """Test the deploy tool."""

    @pytest.mark.asyncio
    async def test_deploy_success(self, registry, no_backend):
        """Test successful deploy output."""
        payload = json.loads(await edge_deploy_function("hello", ADD_CODE, {"imports": {}}))

        assert payload["success"] is True
        assert payload["operation"] == "deploy_function"
        assert payload["function_name"] == "hello"
        assert payload["status"] == "deployed_locally"
        assert payload["function_url"] == "/functions/v1/hello"
        assert payload["import_map_size"] == 1
        assert "hello" in registry

    @pytest.mark.asyncio
    async def test_deploy_validation_failure(self, registry, no_backend):
        """Test invalid names produce troubleshooting hints."""
        payload = json.loads(await edge_deploy_function("Bad_Name", ADD_CODE))

        assert payload["success"] is False
        assert payload["status"] == "error"
        assert payload["error_type"] == "validation_error"
        assert "lowercase" in payload["error"]
        assert "example_function_code" in payload["troubleshooting"]
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_deploy_restricted_access(self, registry, no_backend):
        """Test code reaching into function globals is refused with an access hint."""
        code = "def h(req):\n    return json.dumps.__globals__\nh"
        payload = json.loads(await edge_deploy_function("escape", code))

        assert payload["success"] is False
        assert payload["error_type"] == "validation_error"
        assert "__globals__" in payload["error"]
        assert "check_access" in payload["troubleshooting"]
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_deploy_non_mapping_import_map(self, registry, no_backend):
        """Test a list import map returns a validation error instead of raising."""
        payload = json.loads(await edge_deploy_function("im", ADD_CODE, ["lodash"]))

        assert payload["success"] is False
        assert payload["error_type"] == "validation_error"
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_deploy_unexpected_error(self, registry, no_backend):
        """Test unexpected errors are returned as JSON."""
        with patch.object(registry, "deploy", side_effect=RuntimeError("disk full")):
            payload = json.loads(await edge_deploy_function("hello", ADD_CODE))

        assert payload["success"] is False
        assert payload["error"] == "disk full"


class TestEdgeInvokeTool:
    """Test the invoke tool, including remote fallback."""

    @pytest.mark.asyncio
    async def test_invoke_local(self, registry, no_backend):
        """Test a locally deployed function runs in the embedded runtime."""
        await edge_deploy_function("add", ADD_CODE)
        payload = json.loads(await edge_invoke_function("add", {"a": 2, "b": 3}))

        assert payload["success"] is True
        assert payload["data"] == 5
        assert payload["source"] == "local"
        assert payload["status_code"] == 200
        assert payload["payload_sent"] == {"a": 2, "b": 3}

    @pytest.mark.asyncio
    async def test_invoke_null_result_keeps_data(self, registry, no_backend):
        """Test a function returning None still reports data."""
        await edge_deploy_function("nothing", "def h(req):\n    return None\nh")
        payload = json.loads(await edge_invoke_function("nothing", {}))

        assert payload["success"] is True
        assert payload["data"] is None

    @pytest.mark.asyncio
    async def test_invoke_runtime_failure(self, registry, no_backend):
        """Test local failures are reported with troubleshooting hints."""
        await edge_deploy_function("fail", "def h(req):\n    raise KeyError('x')\nh")
        payload = json.loads(await edge_invoke_function("fail", {}))

        assert payload["success"] is False
        assert payload["error_type"] == "runtime_fault"
        assert "troubleshooting" in payload

    @pytest.mark.asyncio
    async def test_invoke_not_found_without_backend(self, registry, no_backend):
        """Test missing functions get deployment help."""
        await edge_deploy_function("other", ADD_CODE)
        payload = json.loads(await edge_invoke_function("missing", {}))

        assert payload["success"] is False
        assert payload["error_type"] == "not_found"
        assert payload["available_functions"] == ["other"]
        assert payload["deployment_help"]["function_status"] == "not_deployed"
        assert payload["deployment_help"]["test_endpoint"] == "/functions/v1/missing"
        assert "missing" in payload["deployment_help"]["example_function_code"]

    @pytest.mark.asyncio
    async def test_invoke_remote_fallback_success(self, registry):
        """Test unknown local functions are invoked on the backend."""
        manager = Mock()
        manager.invoke_remote_function.return_value = {"data": {"remote": True}, "error": None}
        with patch("supabase_mcp.mcp_server.get_supabase_manager", return_value=manager):
            payload = json.loads(await edge_invoke_function("remote-fn", {"x": 1}, {"X-A": "1"}))

        assert payload["success"] is True
        assert payload["source"] == "remote"
        assert payload["data"] == {"remote": True}
        manager.invoke_remote_function.assert_called_once_with("remote-fn", {"x": 1}, {"X-A": "1"})

    @pytest.mark.asyncio
    async def test_invoke_remote_fallback_failure(self, registry):
        """Test both local and remote errors are reported."""
        manager = Mock()
        manager.invoke_remote_function.return_value = {"data": None, "error": "Function not found"}
        manager.function_endpoint.return_value = "http://localhost:8000/functions/v1/ghost"
        with patch("supabase_mcp.mcp_server.get_supabase_manager", return_value=manager):
            payload = json.loads(await edge_invoke_function("ghost", {}))

        assert payload["success"] is False
        assert payload["supabase_error"] == "Function not found"
        assert payload["deployment_help"]["test_endpoint"] == "http://localhost:8000/functions/v1/ghost"

    @pytest.mark.asyncio
    async def test_remote_fallback_disabled(self, registry):
        """Test the backend is not consulted when fallback is off."""
        manager = Mock()
        with patch("supabase_mcp.mcp_server.get_supabase_manager", return_value=manager), \
                patch.dict(mcp_server.config, {"remote_fallback": False}):
            payload = json.loads(await edge_invoke_function("ghost", {}))

        assert payload["success"] is False
        manager.invoke_remote_function.assert_not_called()

    @pytest.mark.asyncio
    async def test_local_failure_skips_remote(self, registry):
        """Test runtime failures of local functions are not retried remotely."""
        manager = Mock()
        await edge_deploy_function("fail", "def h(req):\n    return 1 / 0\nh")
        with patch("supabase_mcp.mcp_server.get_supabase_manager", return_value=manager):
            payload = json.loads(await edge_invoke_function("fail", {}))

        assert payload["success"] is False
        manager.invoke_remote_function.assert_not_called()


class TestEdgeListAndRemoveTools:
    """Test list and remove tools."""

    @pytest.mark.asyncio
    async def test_list_empty(self, registry, no_backend):
        """Test the empty listing note."""
        payload = json.loads(await edge_list_functions())

        assert payload["success"] is True
        assert payload["total_local_functions"] == 0
        assert "No functions deployed" in payload["note"]
        assert len(payload["common_examples"]) == 4

    @pytest.mark.asyncio
    async def test_list_with_functions_and_backend(self, registry):
        """Test summaries, invoke hints and backend URLs."""
        manager = Mock(functions_url="http://localhost:8000/functions/v1",
                       dashboard_url="http://localhost:8000/project/_/functions")
        await edge_deploy_function("add", ADD_CODE)
        with patch("supabase_mcp.mcp_server.get_supabase_manager", return_value=manager):
            payload = json.loads(await edge_list_functions())

        assert payload["total_local_functions"] == 1
        assert payload["local_functions"][0]["name"] == "add"
        assert payload["local_functions"][0]["runtime"] == "python"
        assert "edge_invoke_function" in payload["function_details"][0]["invoke_command"]
        assert payload["deployment_info"]["functions_url"] == "http://localhost:8000/functions/v1"

    @pytest.mark.asyncio
    async def test_remove(self, registry, no_backend):
        """Test removal reports remaining functions."""
        await edge_deploy_function("keep", ADD_CODE)
        await edge_deploy_function("drop", ADD_CODE)

        payload = json.loads(await edge_remove_function("drop"))
        assert payload["success"] is True
        assert payload["remaining_functions"] == ["keep"]

        payload = json.loads(await edge_remove_function("drop"))
        assert payload["success"] is False
        assert "not found" in payload["message"]
