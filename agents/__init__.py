"""
Agents Module
=============
- FailoverOrchestrator: routes one chat request across providers
"""

from .router import FailoverOrchestrator, RouterState

__all__ = ["FailoverOrchestrator", "RouterState"]
