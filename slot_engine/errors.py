"""
Error taxonomy for the slot-filling interview engine.

Propagation policy:
- SchemaViolation / DependencyCycle / CatalogError: structural bugs in the
  caller or the schema. Raised, never swallowed. A turn that hits one is
  aborted and its state is not saved.
- PolicyViolation: a write the inference policy forbids. The engine catches
  it, logs it, and simply does not apply the extraction.
- ExtractionParseError: malformed model output. Caught inside the
  extraction adapter and degraded to "no new information this turn".
"""

from typing import List, Optional, Sequence


class SlotEngineError(Exception):
    """Base class for all engine errors"""
    pass


class SchemaViolation(SlotEngineError):
    """Unknown slot referenced, or a value that does not fit its slot"""

    def __init__(self, message: str, slot_name: Optional[str] = None):
        super().__init__(message)
        self.slot_name = slot_name


class PolicyViolation(SlotEngineError):
    """Write attempted against a NoInference slot without the explicit flag"""

    def __init__(self, message: str, slot_name: str):
        super().__init__(message)
        self.slot_name = slot_name


class ExtractionParseError(SlotEngineError):
    """Model output could not be parsed as structured extraction data"""

    def __init__(self, message: str, raw_output: Optional[str] = None):
        super().__init__(message)
        self.raw_output = raw_output


class DependencyCycle(SlotEngineError):
    """
    Schema declares a cycle in depends_on.

    Attributes:
        cycle: Slot names forming the cycle, first name repeated at the end
            (e.g. ['A', 'B', 'A'])
    """

    def __init__(self, cycle: Sequence[str]):
        self.cycle: List[str] = list(cycle)
        super().__init__(
            "Dependency cycle in schema: " + " -> ".join(self.cycle)
        )


class CatalogError(SlotEngineError, ValueError):
    """Malformed schema or template catalog definition"""
    pass
