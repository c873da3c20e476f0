"""kubeplan: dependency-ordered planning and execution for declarative infrastructure."""

__version__ = "0.1.0"
