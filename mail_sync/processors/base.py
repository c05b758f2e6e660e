"""
Abstract base class for email processors.
"""

from abc import ABC, abstractmethod


class BaseProcessor(ABC):
    """Abstract processor interface for email processing pipelines."""

    @abstractmethod
    def process(self) -> dict:
        """
        Run one processing pass.

        Returns:
            Processing statistics dict
        """
        pass
