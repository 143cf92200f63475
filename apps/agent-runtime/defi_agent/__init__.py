"""DeFi action planning and execution agent."""

__version__ = "0.1.0"
