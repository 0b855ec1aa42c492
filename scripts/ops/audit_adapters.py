#!/usr/bin/env python3
"""
Convenience wrapper for ``broker-adapters adapters audit``.

Operators who prefer a Python entry point can run
``python scripts/ops/audit_adapters.py``. All arguments are forwarded to the
CLI command, so flags like ``--json`` or ``--no-fail-on-error`` work verbatim.
Global options such as ``--catalog`` can be supplied through
``BROKER_ADAPTERS_AUDIT_ARGS``.
"""

from __future__ import annotations

import os
import shlex
import sys

from typer.main import get_command

from broker_adapters.cli.main import app


def main(argv: list[str] | None = None) -> int:
    command = get_command(app)
    global_args = shlex.split(os.environ.get("BROKER_ADAPTERS_AUDIT_ARGS", ""))
    args = [*global_args, "adapters", "audit", *(sys.argv[1:] if argv is None else argv)]
    try:
        command.main(args=args, prog_name="broker-adapters", standalone_mode=True)
    except SystemExit as exc:
        return int(exc.code or 0)
    return 0


if __name__ == "__main__":
    sys.exit(main())
