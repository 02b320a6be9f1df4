"""Supervision of out-of-process MCP services."""

from toolhost.services.supervisor import ServiceHandle, ServiceSupervisor

__all__ = ["ServiceHandle", "ServiceSupervisor"]
