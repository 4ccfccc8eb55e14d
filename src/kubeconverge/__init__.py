"""kubeconverge: converge a graph of cloud resources to a declared state."""

__version__ = "0.1.0"
