"""Supabase MCP Server with an embedded Python edge function runtime."""

__version__ = "0.1.0"
