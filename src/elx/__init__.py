"""elx: esbuild + Electron development orchestrator."""

__version__ = "0.1.0"
