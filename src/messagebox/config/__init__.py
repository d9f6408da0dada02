"""
Configuration loading for the MessageBox.
"""

from .config_loader import AdapterConfig, InterfaceConfig, MessageBoxConfig

__all__ = ["AdapterConfig", "InterfaceConfig", "MessageBoxConfig"]
