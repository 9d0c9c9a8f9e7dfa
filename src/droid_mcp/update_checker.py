"""
Update check for npx-launched tool servers.

Reads the package spec out of the server's argument list, asks the npm
registry for the package's ``dist-tags.latest`` and compares the two.

Usage:
    from droid_mcp.update_checker import check_for_update

    result = await check_for_update(config)
    # {"success": True, "package_name": "@scope/tool", "current_version": "1.2.0",
    #  "latest_version": "1.3.0", "update_available": True, ...}
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

from droid_mcp.env_config import DEFAULT_REGISTRY_URL
from droid_mcp.models import STDIO, ServerConfig
from droid_mcp.response import ErrorCodes, ResponseEnvelope

logger = logging.getLogger(__name__)

REGISTRY_TIMEOUT = 10  # seconds
LATEST = "latest"

_LEADING_DIGITS = re.compile(r"\d+")
# Ranges and tags such as ^1.2.0, ~1.2 or next are not pinned versions
_PINNED = re.compile(r"\d")


def extract_package_spec(args: Optional[List[str]]) -> Optional[Tuple[str, Optional[str]]]:
    """
    Find the package spec in an npx argument list.

    The first argument not starting with ``-`` is the spec. ``name@version``
    and ``@scope/name@version`` split on the last ``@`` that is not the
    scope prefix.

    Returns:
        (package name, version or None), or None if there is no spec
    """
    if not args:
        return None
    spec = next((arg for arg in args if not arg.startswith("-")), None)
    if not spec:
        return None

    at = spec.rfind("@")
    if at > 0:
        return spec[:at], spec[at + 1:] or None
    return spec, None


def _version_parts(version: str) -> List[int]:
    base = version.split("-", 1)[0]
    parts = []
    for piece in base.split("."):
        match = _LEADING_DIGITS.match(piece.strip())
        parts.append(int(match.group()) if match else 0)
    return parts


def compare_versions(a: str, b: str) -> int:
    """
    Compare dotted-numeric versions.

    Pre-release suffixes after ``-`` are ignored and missing trailing
    components count as 0.

    Returns:
        -1 if a < b, 0 if equal, 1 if a > b
    """
    parts_a = _version_parts(a)
    parts_b = _version_parts(b)
    length = max(len(parts_a), len(parts_b))
    parts_a += [0] * (length - len(parts_a))
    parts_b += [0] * (length - len(parts_b))
    for left, right in zip(parts_a, parts_b):
        if left > right:
            return 1
        if left < right:
            return -1
    return 0


def evaluate_update(package_name: str, current_version: Optional[str], registry_data: Dict[str, Any]) -> dict:
    """Build the update report from a registry document."""
    latest = (registry_data.get("dist-tags") or {}).get("latest") if isinstance(registry_data, dict) else None
    if not latest:
        return ResponseEnvelope.error(
            ErrorCodes.EXTERNAL_SERVICE_ERROR,
            f"Registry returned no latest version for {package_name}",
        )

    current = current_version or LATEST
    update_available = (
        current != LATEST
        and bool(_PINNED.match(current))
        and compare_versions(current, latest) < 0
    )
    return ResponseEnvelope.success(
        package_name=package_name,
        current_version=current,
        latest_version=latest,
        update_available=update_available,
    )


def registry_url_for(package_name: str, registry_url: str = DEFAULT_REGISTRY_URL) -> str:
    return f"{registry_url.rstrip('/')}/{quote(package_name, safe='')}"


async def check_for_update(
    config: ServerConfig,
    registry_url: str = DEFAULT_REGISTRY_URL,
    timeout: int = REGISTRY_TIMEOUT,
) -> dict:
    """
    Check whether a newer version of the server's npm package is published.

    Args:
        config: Server configuration (must be an npx stdio server)
        registry_url: npm registry base URL
        timeout: Request timeout in seconds

    Returns:
        Result envelope with package_name, current_version, latest_version
        and update_available on success
    """
    if config.type != STDIO or "npx" not in config.command.lower():
        return ResponseEnvelope.error(
            ErrorCodes.CONFIG_ERROR,
            "Update checks are only supported for servers launched with npx",
        )

    spec = extract_package_spec(config.args)
    if spec is None:
        return ResponseEnvelope.error(ErrorCodes.CONFIG_ERROR, "No npm package found in server arguments")
    package_name, version = spec

    url = registry_url_for(package_name, registry_url)
    try:
        response = await asyncio.to_thread(requests.get, url, timeout=timeout)
    except requests.exceptions.Timeout:
        return ResponseEnvelope.error(ErrorCodes.TIMEOUT, f"Registry lookup timed out for {package_name}")
    except requests.exceptions.RequestException as e:
        logger.warning(f"Registry lookup failed for {package_name}: {e}")
        return ResponseEnvelope.error(ErrorCodes.EXTERNAL_SERVICE_ERROR, f"Registry lookup failed: {e}")

    if response.status_code != 200:
        return ResponseEnvelope.error(
            ErrorCodes.EXTERNAL_SERVICE_ERROR,
            f"Registry lookup failed: HTTP {response.status_code}",
        )

    try:
        data = response.json()
    except ValueError:
        return ResponseEnvelope.error(ErrorCodes.EXTERNAL_SERVICE_ERROR, "Registry returned invalid JSON")

    result = evaluate_update(package_name, version, data)
    if result["success"]:
        logger.info(
            f"{config.name}: {package_name} current={result['current_version']} "
            f"latest={result['latest_version']} update_available={result['update_available']}"
        )
    return result
