"""
Capability contracts shared by backup sources and destinations
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO, Dict


@dataclass
class BackupObject:
    """One backup artifact: a stable identifier and a readable byte stream"""
    id: str
    data: BinaryIO


class Destination(ABC):
    """Where backup artifacts are stored"""

    @abstractmethod
    def store(self, obj: BackupObject) -> int:
        """Store the artifact and return its stored size in bytes"""

    @abstractmethod
    def ensure_retention(self, max_count: int) -> None:
        """Delete the oldest artifacts beyond max_count"""


class Source(ABC):
    """A data source that produces backup artifacts"""

    @abstractmethod
    def stream(self, destination: Destination) -> int:
        """Write one or more artifacts to destination and return the total size"""


class BufferDestination(Destination):
    """
    Destination keeping artifacts in memory

    Insertion order doubles as recency, so retention drops the artifacts
    stored first.
    """

    def __init__(self):
        self.data: Dict[str, bytes] = {}

    def store(self, obj: BackupObject) -> int:
        content = obj.data.read()
        self.data.pop(obj.id, None)
        self.data[obj.id] = content
        return len(content)

    def ensure_retention(self, max_count: int) -> None:
        if max_count < 0:
            raise ValueError("max_count must not be negative")
        obsolete = list(self.data)[:max(len(self.data) - max_count, 0)]
        for key in obsolete:
            del self.data[key]
