from __future__ import annotations

import os
import tempfile

import yaml

from .api_models import RoutingConfiguration
from .events import utc_now


def render_routes(config: RoutingConfiguration, environment: str = "") -> str:
    header = (
        "# Auto-generated routes from backend routing labels\n"
        f"# Generated at: {utc_now()}\n"
        f"# Environment: {environment}\n"
        "#\n"
        "# This file is generated by crp; edits are overwritten on the next cycle.\n\n"
    )
    return header + yaml.safe_dump(config.to_traefik(), sort_keys=False, default_flow_style=False, indent=2)


def write_routes(path: str, config: RoutingConfiguration, environment: str = "") -> None:
    """Replace ``path`` atomically so the proxy's file watcher never sees a partial file."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".routes-", suffix=".yml", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(render_routes(config, environment))
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
