from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from services.records import copy_records


@dataclass
class ExecutionSummary:
    """What the last execution on a DFU did, for display."""
    transfer_type: str
    timestamp: str
    message: str
    details: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "type": self.transfer_type,
            "timestamp": self.timestamp,
            "message": self.message,
            "details": list(self.details),
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            transfer_type=data.get("type", ""),
            timestamp=data.get("timestamp", ""),
            message=data.get("message", ""),
            details=list(data.get("details") or []),
        )

    def __str__(self):
        return f"{self.transfer_type}: {self.message}"


@dataclass
class CompletedTransfer:
    """
    Persisted record of the transfers executed on one DFU.

    ``original_records`` is the DFU slice captured before the first transfer
    ever applied to the DFU. Later transfers keep it as is; undo restores it.
    """
    dfu_code: str
    transfer_type: str
    timestamp: str
    completed_by: str = ""
    target_variant: Optional[str] = None
    transfers: Dict[str, str] = field(default_factory=dict)
    transfer_count: int = 0
    transfer_history: List[dict] = field(default_factory=list)
    original_variant_count: int = 0
    summary: Optional[ExecutionSummary] = None
    original_records: Optional[List[dict]] = None

    def metadata(self):
        """Everything except the captured slice."""
        return {
            "type": self.transfer_type,
            "targetVariant": self.target_variant,
            "transfers": dict(self.transfers),
            "timestamp": self.timestamp,
            "completedBy": self.completed_by,
            "transferCount": self.transfer_count,
            "originalVariantCount": self.original_variant_count,
            "transferHistory": list(self.transfer_history),
            "summary": self.summary.to_dict() if self.summary else None,
        }

    def to_dict(self):
        data = self.metadata()
        data["dfuCode"] = self.dfu_code
        data["originalRecords"] = copy_records(self.original_records) if self.original_records is not None else None
        return data

    @classmethod
    def from_dict(cls, data):
        summary = data.get("summary")
        original = data.get("originalRecords")
        return cls(
            dfu_code=data.get("dfuCode", ""),
            transfer_type=data.get("type", ""),
            timestamp=data.get("timestamp", ""),
            completed_by=data.get("completedBy") or "",
            target_variant=data.get("targetVariant"),
            transfers=dict(data.get("transfers") or {}),
            transfer_count=int(data.get("transferCount") or 0),
            transfer_history=list(data.get("transferHistory") or []),
            original_variant_count=int(data.get("originalVariantCount") or 0),
            summary=ExecutionSummary.from_dict(summary) if summary else None,
            original_records=copy_records(original) if original is not None else None,
        )
