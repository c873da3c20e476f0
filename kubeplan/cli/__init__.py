"""kubeplan command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``kubeplan`` script).
"""

from kubeplan.cli.main import cli

__all__ = ["cli"]
