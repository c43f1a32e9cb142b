"""MCP Tools for zendesk-mcp-server.

Tools resolve the caller's authenticated Zendesk client from the request
context bound by the bearer middleware; they never see tokens or session ids.
"""

import logging

from fastmcp import FastMCP

from oauth.context import current_session_id, get_zendesk_client

logger = logging.getLogger(__name__)

# Create the FastMCP server instance
mcp = FastMCP("zendesk-mcp-server")


async def get_current_user() -> dict:
    """Get the Zendesk user the current session is authorized as.

    Returns:
        The Zendesk user record (id, name, email, role, ...)
    """
    logger.info("[TOOL] get_current_user invoked")
    client = get_zendesk_client()
    return await client.get_current_user()


def auth_status() -> dict:
    """Report whether this request carries a usable Zendesk authorization.

    Returns:
        Session id, subdomain and whether the upstream token is still valid
    """
    logger.info("[TOOL] auth_status invoked")
    client = get_zendesk_client()
    return {
        "authenticated": not client.is_token_expired(),
        "session_id": current_session_id(),
        "subdomain": client.subdomain,
    }


mcp.tool(get_current_user)
mcp.tool(auth_status)
