"""q - Terminal AI assistant with a semantic answer cache."""

from qcli.sdk import ShellAssistant

__all__ = ["ShellAssistant"]
__version__ = "0.1.0"
