"""
Extraction Adapter - Turn a free-text answer into calibrated slot values

Responsibilities:
- Build the extraction prompt for the slots targeted this turn
- Call the language model and parse its JSON output
- Discard anything outside the target slots
- Calibrate model confidence and apply the inference policy
- Degrade to a deterministic extraction when the model is unavailable

Design principles:
- Scope containment: never returns a slot outside target_slots
- Early return for clearly unclear answers (no model call)
- Calibration is deterministic and lives here, not in the model
- Soft failure: malformed output means "no new information", never a raise
- The adapter never writes to SlotState; the engine applies the results
"""

import json
import logging
import re
from typing import Any, Dict, Iterable, Optional, Sequence

from slot_engine.contracts import Extraction, InferencePolicy, SlotDefinition, SlotKind
from slot_engine.errors import ExtractionParseError
from slot_engine.utils.prompt_builder import (
    ExtractionPromptSpec,
    PromptBuilder,
    create_slot_specs,
)
from slot_engine.values import coerce_value

logger = logging.getLogger(__name__)

# Confidence discount and acceptance floor
STANDARD_DISCOUNT = 0.15
STANDARD_FLOOR = 0.40
HIGH_STAKES_DISCOUNT = 0.30
HIGH_STAKES_FLOOR = 0.60

# Raw confidence the deterministic (no model) path gives slots that were
# only picked up incidentally. Slots the question asked about directly are
# accepted at their own min_confidence instead.
FALLBACK_RAW_CONFIDENCE = 0.6

# Structured key for a deterministic answer with no recognisable key: value pairs
FREE_TEXT_FIELD = "notes"

KEY_VALUE_PATTERN = re.compile(r"^\s*([A-Za-z][\w \-]*?)\s*[:=]\s*(.+?)\s*$")
# Pairs are separated by ";" or newlines, or by a comma that starts another "key:"
PAIR_SPLIT_PATTERN = re.compile(r"\s*[;\n]\s*|,\s*(?=[A-Za-z][\w \-]*[:=])")

SOURCE_MODEL = "model"
SOURCE_FALLBACK = "deterministic_fallback"

OUTCOME_SUCCESS = "success"
OUTCOME_EMPTY = "empty"
OUTCOME_UNCLEAR = "unclear"
OUTCOME_PARSE_FAILED = "parse_failed"
OUTCOME_MODEL_FAILED = "model_failed"

# Pure unclear answer patterns (early return, no model call)
UNCLEAR_PATTERNS = [
    "i don't know",
    "i dont know",
    "i'm not sure",
    "not sure",
    "no idea",
    "unsure",
    "can't say",
    "no comment",
]

# Answers longer than this are never treated as pure unclear
UNCLEAR_MAX_WORDS = 6


def is_high_stakes(definition: SlotDefinition) -> bool:
    return definition.inference_policy != InferencePolicy.INFERABLE or definition.high_stakes


def calibrate(definition: SlotDefinition, raw_confidence: float):
    """
    Apply the slot's discount.

    Returns:
        (calibrated_confidence, acceptance_floor)
    """
    if is_high_stakes(definition):
        discount, floor = HIGH_STAKES_DISCOUNT, HIGH_STAKES_FLOOR
    else:
        discount, floor = STANDARD_DISCOUNT, STANDARD_FLOOR
    # Rounded so 0.75 - 0.15 compares equal to 0.60
    calibrated = round(max(0.0, raw_confidence - discount), 6)
    return calibrated, floor


def unreachable_slots(schema):
    """
    Slots whose min_confidence is above the best calibrated confidence.

    Such a slot can never become ready through extraction alone.
    """
    names = []
    for definition in schema:
        best, _ = calibrate(definition, 1.0)
        if definition.min_confidence > best:
            names.append(definition.name)
    return names


def parse_key_values(text: str, properties: Sequence[str] = ()) -> Dict[str, str]:
    """
    Read "key: value" (or "key = value") pairs out of free text.

    Keys are matched to the slot's properties ignoring case, spaces and
    hyphens. Pairs with unknown keys are dropped when properties are
    declared. With no usable pair the whole text lands under
    FREE_TEXT_FIELD.
    """
    known = {_normalize_key(p): p for p in properties}
    fields = {}
    for part in PAIR_SPLIT_PATTERN.split(text.strip()):
        match = KEY_VALUE_PATTERN.match(part)
        if not match:
            continue
        key = _normalize_key(match.group(1))
        if known:
            if key not in known:
                continue
            key = known[key]
        fields[key] = match.group(2)

    if not fields and text.strip():
        fields[FREE_TEXT_FIELD] = text.strip()
    return fields


def _normalize_key(key: str) -> str:
    return re.sub(r"[\s\-]+", "_", key.strip().lower())


class ExtractionAdapter:
    """Extract calibrated slot values from interview answers"""

    def __init__(
        self,
        model_client=None,
        timeout_seconds: float = 30.0,
        temperature: float = 0.0,
        max_tokens: int = 384,
        prompt_builder: Optional[PromptBuilder] = None
    ) -> None:
        """
        Initialize adapter.

        Args:
            model_client: Object with generate_json(prompt=..., max_tokens=...,
                temperature=..., timeout=...) -> str. None means every call
                uses the deterministic path.
            timeout_seconds: Budget passed to the model per call
            temperature: Sampling temperature (default 0.0)
            max_tokens: Max tokens to generate

        Raises:
            TypeError: If model_client lacks a callable generate_json
        """
        if model_client is not None:
            if not callable(getattr(model_client, 'generate_json', None)):
                raise TypeError("model_client must have callable generate_json() method")

        self.model_client = model_client
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.last_metadata: Dict[str, Any] = {}

        logger.info(
            f"Extraction Adapter initialized "
            f"(model={'yes' if model_client is not None else 'none'}, timeout={timeout_seconds}s)"
        )

    # ========================
    # Public API
    # ========================

    def extract(
        self,
        answer_text: str,
        question_context: str,
        target_slots: Sequence[str],
        schema,
        explicit_slots: Iterable[str] = (),
        conversation_excerpt: Sequence[str] = (),
        state=None
    ) -> Dict[str, Extraction]:
        """
        Extract values for the target slots from one answer.

        Args:
            answer_text: What the respondent said
            question_context: Question the answer responds to
            target_slots: Slots this turn may write (order kept for prompts)
            schema: Schema defining the slots
            explicit_slots: Target slots the question explicitly asked about
                (NoInference slots outside this set are always rejected)
            conversation_excerpt: Recent Q/A lines for prompt context
            state: Optional SlotState, adds current values to the prompt

        Returns:
            Dict[slot_name, Extraction]: accepted extractions only; keys are
            always a subset of target_slots

        Raises:
            TypeError: If answer_text is not a string
            SchemaViolation: If a target slot is not in the schema
        """
        if not isinstance(answer_text, str):
            raise TypeError(f"answer_text must be string, got {type(answer_text).__name__}")

        targets = list(dict.fromkeys(target_slots))
        definitions = {name: schema.get(name) for name in targets}
        explicit = set(explicit_slots)

        metadata = {
            'outcome': None,
            'target_slots': targets,
            'raw_output': None,
            'error_type': None,
            'error_message': None,
            'unexpected_slots': [],
            'rejected': [],
            'source': SOURCE_MODEL,
        }
        self.last_metadata = metadata

        if not targets or not answer_text.strip():
            metadata['outcome'] = OUTCOME_EMPTY
            return {}

        if self._is_pure_unclear(answer_text):
            logger.info(f"Pure unclear answer, skipping extraction: '{answer_text}'")
            metadata['outcome'] = OUTCOME_UNCLEAR
            return {}

        if self.model_client is None:
            metadata['source'] = SOURCE_FALLBACK
            return self._deterministic_extract(answer_text, definitions, explicit, metadata)

        spec = ExtractionPromptSpec(
            question_context=question_context,
            slots=create_slot_specs(targets, schema, state),
            conversation_excerpt=tuple(conversation_excerpt),
        )
        prompt = self.prompt_builder.build_extraction_prompt(spec, answer_text)

        try:
            raw_output = self.model_client.generate_json(
                prompt=prompt,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                timeout=self.timeout_seconds
            )
        except Exception as e:
            logger.error(f"Model extraction failed: {type(e).__name__} - {e}")
            metadata['error_type'] = type(e).__name__
            metadata['error_message'] = str(e)
            metadata['source'] = SOURCE_FALLBACK
            return self._deterministic_extract(answer_text, definitions, explicit, metadata)

        metadata['raw_output'] = raw_output

        try:
            candidates = self._parse_output(raw_output)
        except ExtractionParseError as e:
            logger.warning(f"Extraction output unusable: {e}")
            metadata['outcome'] = OUTCOME_PARSE_FAILED
            metadata['error_type'] = type(e).__name__
            metadata['error_message'] = str(e)
            return {}

        accepted = {}
        for slot_name, data in candidates.items():
            if slot_name not in definitions:
                metadata['unexpected_slots'].append(slot_name)
                logger.warning(f"Discarding extraction for untargeted slot '{slot_name}'")
                continue

            if not isinstance(data, dict):
                self._reject(metadata, slot_name, "entry is not an object")
                continue

            raw_confidence = data.get('confidence')
            if isinstance(raw_confidence, bool) or not isinstance(raw_confidence, (int, float)):
                try:
                    raw_confidence = float(raw_confidence)
                except (TypeError, ValueError):
                    self._reject(metadata, slot_name, f"bad confidence {raw_confidence!r}")
                    continue

            extraction = self._accept(
                definitions[slot_name],
                raw_value=data.get('value'),
                raw_confidence=float(raw_confidence),
                reasoning=data.get('reasoning'),
                explicit=slot_name in explicit,
                source=SOURCE_MODEL,
                metadata=metadata,
            )
            if extraction is not None:
                accepted[slot_name] = extraction

        metadata['outcome'] = OUTCOME_SUCCESS if accepted else OUTCOME_EMPTY
        return accepted

    # ========================
    # Parsing
    # ========================

    def _parse_output(self, raw_output: Any) -> Dict[str, Any]:
        """
        Parse model output into {slot_name: {value, confidence, reasoning}}.

        Accepts either the bare map or an {"extractions": {...}} wrapper.

        Raises:
            ExtractionParseError: If output is not a JSON object
        """
        if isinstance(raw_output, dict):
            parsed = raw_output
        else:
            if not isinstance(raw_output, str):
                raise ExtractionParseError(
                    f"expected str output, got {type(raw_output).__name__}"
                )
            try:
                parsed = json.loads(raw_output)
            except json.JSONDecodeError as e:
                raise ExtractionParseError(f"Invalid JSON: {e}", raw_output=raw_output)

        if not isinstance(parsed, dict):
            raise ExtractionParseError(
                f"expected JSON object, got {type(parsed).__name__}", raw_output=str(raw_output)
            )

        wrapped = parsed.get('extractions')
        if isinstance(wrapped, dict):
            parsed = wrapped

        return {key: value for key, value in parsed.items() if not key.startswith('_')}

    def _is_pure_unclear(self, answer_text: str) -> bool:
        normalized = answer_text.lower().strip().strip('.!?')
        if len(normalized.split()) > UNCLEAR_MAX_WORDS:
            return False
        return any(pattern in normalized for pattern in UNCLEAR_PATTERNS)

    # ========================
    # Acceptance
    # ========================

    def _accept(
        self,
        definition: SlotDefinition,
        raw_value: Any,
        raw_confidence: float,
        reasoning: Optional[str],
        explicit: bool,
        source: str,
        metadata: Dict[str, Any],
        assigned_confidence: Optional[float] = None
    ) -> Optional[Extraction]:
        """
        Apply policy, calibration and coercion; None means rejected.

        assigned_confidence replaces calibration and the acceptance floor
        (deterministic answers to a direct question).
        """
        name = definition.name

        if definition.inference_policy == InferencePolicy.NO_INFERENCE and not explicit:
            self._reject(metadata, name, "no_inference slot not explicitly asked")
            return None

        raw_confidence = min(1.0, max(0.0, raw_confidence))
        if assigned_confidence is not None:
            calibrated = assigned_confidence
        else:
            calibrated, floor = calibrate(definition, raw_confidence)
            if calibrated < floor:
                self._reject(metadata, name, f"confidence {calibrated:.2f} below floor {floor:.2f}")
                return None

        try:
            value = coerce_value(definition.kind, raw_value)
        except ValueError as e:
            self._reject(metadata, name, f"value does not fit {definition.kind.value}: {e}")
            return None

        logger.debug(f"Accepted {name}: raw={raw_confidence:.2f} calibrated={calibrated:.2f} ({source})")
        return Extraction(
            slot_name=name,
            value=value,
            raw_value=raw_value,
            raw_confidence=raw_confidence,
            confidence=calibrated,
            reasoning=reasoning,
            source=source,
        )

    def _reject(self, metadata: Dict[str, Any], slot_name: str, reason: str) -> None:
        metadata['rejected'].append({'slot': slot_name, 'reason': reason})
        logger.warning(f"Rejected extraction for '{slot_name}': {reason}")

    def _deterministic_extract(
        self,
        answer_text: str,
        definitions: Dict[str, SlotDefinition],
        explicit: set,
        metadata: Dict[str, Any]
    ) -> Dict[str, Extraction]:
        """
        Non-model extraction: the trimmed answer goes under each target slot.

        Lists are split on separators by coerce_value. Structured slots
        take "key: value" pairs (see parse_key_values).

        A slot the question asked about directly is accepted at its own
        min_confidence, so a model outage cannot stall the interview.
        Slots picked up incidentally get FALLBACK_RAW_CONFIDENCE and the
        usual calibration, which keeps them below readiness.
        """
        text = answer_text.strip()
        accepted = {}
        for name, definition in definitions.items():
            direct = name in explicit
            raw_value: Any = text
            if definition.kind == SlotKind.STRUCTURED:
                raw_value = parse_key_values(text, definition.properties)

            extraction = self._accept(
                definition,
                raw_value=raw_value,
                raw_confidence=FALLBACK_RAW_CONFIDENCE,
                reasoning="deterministic extraction (model unavailable)",
                explicit=direct,
                source=SOURCE_FALLBACK,
                metadata=metadata,
                assigned_confidence=definition.min_confidence if direct else None,
            )
            if extraction is not None:
                accepted[name] = extraction

        metadata['outcome'] = OUTCOME_MODEL_FAILED if metadata.get('error_type') else (
            OUTCOME_SUCCESS if accepted else OUTCOME_EMPTY
        )
        logger.info(f"Deterministic extraction accepted {sorted(accepted)}")
        return accepted


