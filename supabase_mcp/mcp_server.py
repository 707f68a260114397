"""Supabase MCP Server.

A Model Context Protocol server that deploys and runs Python edge functions
for self-hosted Supabase instances. Functions are held in an embedded,
sandboxed runtime; when a function is not deployed locally, invocations fall
back to the configured Supabase instance.
"""

import asyncio
import json
import logging
import os
import sys
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP

from .client import SupabaseManager
from .errors import FunctionNotFoundError
from .models import to_payload
from .registry import FunctionRegistry

# CRITICAL: Configure logging to stderr only (never stdout - corrupts MCP JSON-RPC)
logging.basicConfig(stream=sys.stderr, level=logging.INFO)
logger = logging.getLogger("supabase-mcp")

# Load environment variables from .env file
load_dotenv()

EXAMPLE_FUNCTION_CODE = '''async def handler(req):
    message = req.get("message")
    return {
        "message": "Hello from {function_name}!",
        "received": message,
        "timestamp": datetime.datetime.now().isoformat(),
    }

handler'''

COMMON_EXAMPLES = [
    {"name": "hello-world", "description": "Basic HTTP function", "example_payload": {"message": "Hello"}},
    {"name": "webhook-handler", "description": "Process webhooks", "example_payload": {"event": "user.created", "data": {}}},
    {"name": "image-processor", "description": "Process uploaded images", "example_payload": {"image_url": "https://example.com/image.jpg"}},
    {"name": "email-sender", "description": "Send transactional emails", "example_payload": {"to": "user@example.com", "subject": "Hello"}},
]


def validate_environment() -> None:
    """Validate required environment variables."""
    required_vars = ["SUPABASE_URL", "SUPABASE_ANON_KEY"]
    missing_vars = [var for var in required_vars if not os.getenv(var)]

    if missing_vars:
        error_msg = f"Missing required environment variables: {missing_vars}"
        logger.error(error_msg)
        raise ValueError(error_msg)

    logger.info("Environment variables validated successfully")


def get_config() -> Dict[str, Any]:
    """Get configuration from environment variables."""
    return {
        "log_level": os.getenv("LOG_LEVEL", "INFO"),
        "server_name": os.getenv("MCP_SERVER_NAME", "supabase-mcp"),
        "timeout_seconds": float(os.getenv("EDGE_FUNCTION_TIMEOUT_SECONDS", "30")),
        "max_code_size": int(os.getenv("EDGE_FUNCTION_MAX_CODE_SIZE", "100000")),
        "functions_dir": os.getenv(
            "EDGE_FUNCTIONS_DIR", str(Path(tempfile.gettempdir()) / "mcp-python-functions")
        ),
        "remote_fallback": os.getenv("EDGE_REMOTE_FALLBACK", "true").lower() == "true",
        "debug": os.getenv("DEBUG", "false").lower() == "true",
    }


config = get_config()

# Update logging level if specified
if config["log_level"]:
    logger.setLevel(getattr(logging, config["log_level"].upper(), logging.INFO))

# Initialize FastMCP server
mcp = FastMCP(config["server_name"])

# Embedded function runtime; contents live as long as the process
registry = FunctionRegistry(
    scratch_dir=config["functions_dir"],
    timeout_seconds=config["timeout_seconds"],
    max_code_size=config["max_code_size"],
)

_supabase_manager: Optional[SupabaseManager] = None


def get_supabase_manager() -> Optional[SupabaseManager]:
    """Get the backend manager, creating it on first use.

    Returns:
        SupabaseManager, or None when no backend is configured
    """
    global _supabase_manager
    if _supabase_manager is not None:
        return _supabase_manager

    supabase_url = os.getenv("SUPABASE_URL")
    supabase_key = os.getenv("SUPABASE_ANON_KEY")
    if not supabase_url or not supabase_key:
        return None

    try:
        _supabase_manager = SupabaseManager(supabase_url=supabase_url, supabase_key=supabase_key)
    except ValueError as e:
        logger.error(f"Failed to initialize Supabase manager: {e}")
        return None
    return _supabase_manager


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def create_json_response(payload: Dict[str, Any]) -> str:
    """Serialize a tool result as indented JSON text."""
    return json.dumps(payload, indent=2, default=_json_default)


def _example_code(function_name: str) -> str:
    return EXAMPLE_FUNCTION_CODE.replace("{function_name}", function_name)


def _function_endpoint(function_name: str, local_url: str) -> str:
    manager = get_supabase_manager()
    return manager.function_endpoint(function_name) if manager else local_url


@mcp.tool()
async def edge_deploy_function(
    function_name: str,
    function_code: str,
    import_map: Optional[Dict[str, Any]] = None
) -> str:
    """Deploy a Python edge function to the built-in serverless runtime.

    The code either ends with the bare name of its handler
    (``def handler(req): ...`` then ``handler``) or exposes one through
    ``exports.default`` / ``module.exports`` or a top-level declaration.

    Args:
        function_name: Lowercase letters, digits and hyphens (max 50 characters)
        function_code: Python source of the function
        import_map: Optional dependency map, stored with the function

    Returns:
        JSON text with the deployment outcome
    """
    try:
        logger.info(f"Executing edge_deploy_function for '{function_name}'")
        result = registry.deploy(function_name, function_code, import_map)

        response: Dict[str, Any] = {"operation": "deploy_function", **to_payload(result)}
        response["status"] = "deployed_locally" if result.success else "error"
        response["deployment_type"] = "python_serverless_handler"
        response["import_map_size"] = len(import_map) if isinstance(import_map, dict) else 0

        if result.success:
            response["next_steps"] = [
                "Test the function using edge_invoke_function tool",
                "Update the function by deploying again with the same name",
                "Remove it with edge_remove_function when no longer needed",
            ]
            response["note"] = "Function deployed successfully to built-in serverless handler. Use edge_invoke_function to test it!"
        else:
            response["troubleshooting"] = {
                "check_name": "Use only lowercase letters, numbers and hyphens (max 50 characters)",
                "check_code": "Verify the function code is valid Python and not empty",
                "check_access": "Avoid underscore attributes, dunder names and introspection builtins such as getattr or type",
                "example_function_code": _example_code(function_name or "my-function"),
            }
            response["note"] = "Function deployment failed. Check the error message above."

        return create_json_response(response)

    except Exception as e:
        logger.error(f"Unexpected error in edge_deploy_function: {e}")
        return create_json_response({
            "success": False,
            "operation": "deploy_function",
            "function_name": function_name,
            "error": str(e),
        })


@mcp.tool()
async def edge_invoke_function(
    function_name: str,
    payload: Any = None,
    headers: Optional[Dict[str, str]] = None
) -> str:
    """Invoke an edge function with a payload.

    Functions deployed with edge_deploy_function run in the built-in runtime.
    Unknown functions are forwarded to the configured Supabase instance when
    remote fallback is enabled.

    Args:
        function_name: Name of the function to invoke
        payload: Request body handed to the function
        headers: Optional request headers

    Returns:
        JSON text with the function result or error details
    """
    try:
        logger.info(f"Executing edge_invoke_function for '{function_name}'")
        result = await registry.execute(function_name, payload, headers)

        if result.success:
            return create_json_response({
                "operation": "invoke_function",
                **to_payload(result),
                "source": "local",
                "payload_sent": payload,
                "headers_sent": headers,
                "note": "Function executed successfully using Python serverless handler",
            })

        if result.error_type != FunctionNotFoundError.kind:
            return create_json_response({
                "operation": "invoke_function",
                **to_payload(result),
                "payload_sent": payload,
                "troubleshooting": {
                    "common_issues": [
                        "Handler raised an exception",
                        "Handler imported a module outside the allow-list",
                        "Handler exceeded the execution timeout",
                        "Last line does not name a function",
                    ],
                    "redeploy": "Fix the function code and deploy again with edge_deploy_function",
                },
            })

        remote_error = None
        manager = get_supabase_manager() if config["remote_fallback"] else None
        if manager is not None:
            remote = await asyncio.to_thread(manager.invoke_remote_function, function_name, payload, headers)
            if remote["error"] is None:
                return create_json_response({
                    "success": True,
                    "operation": "invoke_function",
                    "function_name": function_name,
                    "data": remote["data"],
                    "source": "remote",
                    "payload_sent": payload,
                    "headers_sent": headers,
                })
            remote_error = remote["error"]

        response = {
            "operation": "invoke_function",
            **to_payload(result),
            "deployment_help": {
                "function_status": "not_deployed",
                "deploy_locally": "Use edge_deploy_function tool to deploy to the Python serverless handler",
                "test_endpoint": _function_endpoint(function_name, f"/functions/v1/{function_name}"),
                "example_function_code": _example_code(function_name),
            },
            "note": "Function not found locally or on the Supabase instance. Deploy it first using edge_deploy_function.",
        }
        if remote_error is not None:
            response["supabase_error"] = remote_error
        return create_json_response(response)

    except Exception as e:
        logger.error(f"Unexpected error in edge_invoke_function: {e}")
        return create_json_response({
            "success": False,
            "operation": "invoke_function",
            "function_name": function_name,
            "error": str(e),
            "troubleshooting": {
                "common_issues": [
                    "Function not deployed",
                    "Function name mismatch",
                    "Authentication problems",
                ],
            },
        })


@mcp.tool()
async def edge_list_functions() -> str:
    """List edge functions deployed to the built-in serverless runtime.

    Returns:
        JSON text with function summaries and usage hints
    """
    try:
        logger.info("Executing edge_list_functions tool")
        functions = registry.list()
        manager = get_supabase_manager()

        deployment_info: Dict[str, Any] = {
            "local_handler_status": "active",
            "runtime": "python",
            "total_functions": len(functions),
        }
        if manager is not None:
            deployment_info["functions_url"] = manager.functions_url
            deployment_info["dashboard_url"] = manager.dashboard_url

        return create_json_response({
            "success": True,
            "operation": "list_functions",
            "local_functions": [to_payload(summary) for summary in functions],
            "total_local_functions": len(functions),
            "deployment_info": deployment_info,
            "function_details": [
                {
                    "name": summary.name,
                    "deployed_at": summary.deployed_at,
                    "status": summary.status,
                    "has_import_map": summary.has_import_map,
                    "code_length": summary.code_length,
                    "invoke_command": f"Use edge_invoke_function with function_name: '{summary.name}'",
                }
                for summary in functions
            ],
            "common_examples": COMMON_EXAMPLES,
            "note": (
                f"Found {len(functions)} function(s) in Python serverless handler. Use edge_invoke_function to execute them."
                if functions
                else "No functions deployed to Python serverless handler yet. Use edge_deploy_function to deploy your first function."
            ),
        })

    except Exception as e:
        logger.error(f"Unexpected error in edge_list_functions: {e}")
        return create_json_response({
            "success": False,
            "operation": "list_functions",
            "error": str(e),
        })


@mcp.tool()
async def edge_remove_function(function_name: str) -> str:
    """Remove an edge function from the built-in serverless runtime.

    Args:
        function_name: Name of the function to remove

    Returns:
        JSON text with the outcome and the remaining function names
    """
    try:
        logger.info(f"Executing edge_remove_function for '{function_name}'")
        removed = registry.remove(function_name)

        return create_json_response({
            "success": removed,
            "operation": "remove_function",
            "function_name": function_name,
            "message": (
                f"Function '{function_name}' removed successfully from Python serverless handler"
                if removed
                else f"Function '{function_name}' not found in Python serverless handler"
            ),
            "remaining_functions": registry.names(),
            "note": (
                "Function and associated files have been cleaned up"
                if removed
                else "No action taken - function was not deployed"
            ),
        })

    except Exception as e:
        logger.error(f"Unexpected error in edge_remove_function: {e}")
        return create_json_response({
            "success": False,
            "operation": "remove_function",
            "function_name": function_name,
            "error": str(e),
        })


def main() -> None:
    """Run the MCP server over stdio."""
    try:
        validate_environment()
    except ValueError:
        logger.warning("Supabase backend not configured, remote function fallback disabled")

    logger.info(f"Starting {config['server_name']} MCP server...")
    try:
        mcp.run()
    finally:
        registry.close()
        logger.info("Function registry cleaned up")


if __name__ == "__main__":
    main()
