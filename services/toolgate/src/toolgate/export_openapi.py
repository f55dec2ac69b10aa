"""
Write the gateway's OpenAPI document, or check a committed copy against it.

    toolgate-openapi                        # services/toolgate/contracts/openapi.json
    toolgate-openapi --output api.json
    toolgate-openapi --check                # exit 1 when the committed copy is stale

Keys are sorted, so the output is byte-stable for a given app.
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any

from fastapi import FastAPI

DEFAULT_OUTPUT = Path("services/toolgate/contracts/openapi.json")


def render(app: FastAPI) -> str:
    return json.dumps(app.openapi(), indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="toolgate-openapi", description="Export the gateway OpenAPI document.")
    p.add_argument("--output", type=Path, default=DEFAULT_OUTPUT)
    p.add_argument("--check", action="store_true", help="compare instead of writing")
    return p


def main(argv: list[str] | None = None, app: FastAPI | None = None) -> int:
    opts = _parser().parse_args(argv)
    if app is None:
        from .main import app

    rendered = render(app)
    path: Path = opts.output

    if opts.check:
        current = path.read_text(encoding="utf-8") if path.exists() else None
        if current != rendered:
            state = "missing" if current is None else "stale"
            print(f"{path}: {state}; regenerate with toolgate-openapi --output {path}")
            return 1
        print(f"{path}: up to date")
        return 0

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(rendered, encoding="utf-8")
    schema: dict[str, Any] = json.loads(rendered)
    print(f"{path}: {len(schema['paths'])} paths, {schema['info']['title']} {schema['info']['version']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
