"""Entry point for `python -m kubeplan`.

Usage:
    python -m kubeplan plan nodes.json
    python -m kubeplan state list
"""

from __future__ import annotations

from kubeplan.cli import cli

cli(prog_name="kubeplan")
