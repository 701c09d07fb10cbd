"""User-facing tools backed by the downstream resource API."""

from __future__ import annotations

import json
import logging

import anyio
import requests
from fastmcp import Context, FastMCP

from mcp_token_broker.downstream import DownstreamApiError
from mcp_token_broker.servers.dependencies import get_downstream_client

logger = logging.getLogger("mcp-token-broker.servers.users")

PROFILE_PATH = "api/users/me"

users_mcp = FastMCP(
    name="Users MCP Service",
    instructions="Tools for the signed-in user's account on the resource API.",
)


@users_mcp.tool(tags={"users", "read"})
async def get_my_profile(ctx: Context) -> str:
    """Get the profile of the user the current access token was issued to.

    Returns:
        JSON string with the user's profile, or an ``error`` object.
    """
    try:
        client = await get_downstream_client(ctx)
        profile = await anyio.to_thread.run_sync(client.get_json, PROFILE_PATH)
    except DownstreamApiError as exc:
        logger.warning("get_my_profile failed with status=%s", exc.status_code)
        return json.dumps({"error": str(exc), "status_code": exc.status_code})
    except requests.RequestException:
        logger.warning("get_my_profile: downstream API unreachable", exc_info=True)
        return json.dumps({"error": "Downstream API unreachable"})
    except ValueError as exc:
        return json.dumps({"error": str(exc)})
    return json.dumps(profile, indent=2, ensure_ascii=False)
