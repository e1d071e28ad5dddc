"""
Console Test Harness for InterviewEngine

Simple console loop to run an interview end to end before wiring it into
a service. Pass --no-model to skip loading the language model (extraction
and fallback questions then use the deterministic path).
"""

import json
import logging
import sys
import uuid

from slot_engine.config import EngineConfig
from slot_engine.core.completion_evaluator import CompletionEvaluator
from slot_engine.core.extraction_adapter import ExtractionAdapter
from slot_engine.core.interview_engine import InterviewEngine
from slot_engine.core.question_generator import FallbackQuestionGenerator
from slot_engine.core.question_selector import QuestionSelector
from slot_engine.core.schema import load_catalog, load_schema
from slot_engine.persistence import JsonFilePersistence
from slot_engine.results import IllegalCommand

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXIT_COMMANDS = {"quit", "exit", "stop"}


def print_separator(char="=", length=60):
    print(char * length)


def print_debug_info(turn_result):
    """Print extraction and selection details from a TurnResult"""
    print("\n" + "-" * 60)
    print("DEBUG INFO:")
    print("-" * 60)

    extraction = turn_result.debug.get('extraction', {})
    if extraction:
        print(f"Extraction outcome: {extraction.get('outcome')} ({extraction.get('source')})")
        if extraction.get('unexpected_slots'):
            print(f"Unexpected slots: {extraction['unexpected_slots']}")
        if extraction.get('rejected'):
            print(f"Rejected: {extraction['rejected']}")

    print(f"Accepted slots: {list(turn_result.accepted_slots)}")

    if turn_result.evaluation is not None:
        summary = turn_result.evaluation.summary
        print(
            f"Ready: {summary.completed_count}/{summary.total_count} "
            f"({summary.percentage}%), keyword coverage "
            f"{turn_result.evaluation.keyword_coverage:.2f}"
        )
        print(f"Missing: {list(summary.missing_slots)}")

    for candidate in turn_result.debug.get('candidates', []):
        print(f"  candidate {candidate['template_id']} ({candidate['topic']}): {candidate['score']}")

    print("-" * 60)


def build_engine(config: EngineConfig, use_model: bool = True) -> InterviewEngine:
    """Wire every collaborator from config"""
    schema = load_schema(config.schema_path)
    catalog = load_catalog(config.templates_path, schema)

    model_client = None
    if use_model:
        # Imported lazily so --no-model runs without torch installed
        from slot_engine.utils.hf_client import HuggingFaceClient
        model_client = HuggingFaceClient(
            model_name=config.model_name,
            load_in_4bit=True,
            timeout_seconds=config.model_timeout_seconds
        )

    return InterviewEngine(
        schema=schema,
        catalog=catalog,
        persistence=JsonFilePersistence("outputs/sessions"),
        extraction_adapter=ExtractionAdapter(
            model_client, timeout_seconds=config.model_timeout_seconds
        ),
        question_selector=QuestionSelector(recent_window=config.recent_question_window),
        question_generator=FallbackQuestionGenerator(
            model_client,
            timeout_seconds=config.model_timeout_seconds,
            recent_window=config.recent_question_window
        ),
        completion_evaluator=CompletionEvaluator(config, catalog.closing_template_ids),
    )


def main():
    """Run console interview"""
    print_separator()
    print("SLOT ENGINE - CONSOLE INTERVIEW")
    print_separator()

    use_model = "--no-model" not in sys.argv
    show_debug = "--debug" in sys.argv
    print(f"\nInitializing modules (model: {'on' if use_model else 'off'})...")

    try:
        config = EngineConfig.from_json("data/engine_config.json")
        engine = build_engine(config, use_model=use_model)
    except Exception as e:
        print(f"\nFailed to initialize: {e}")
        logger.exception("Initialization failed")
        return 1

    session_id = uuid.uuid4().hex[:8]
    print_separator()
    print(f"STARTING SESSION {session_id}")
    print_separator()
    print("Type 'quit', 'exit', or 'stop' to end early\n")

    result = engine.start_session(session_id)
    if isinstance(result, IllegalCommand):
        print(f"\nCannot start: {result.reason}")
        return 1
    print(f"\nInterviewer: {result.system_output}\n")

    while not result.session_complete:
        try:
            answer = input("> ").strip()
            if not answer:
                print("Please enter a response.\n")
                continue
            if answer.lower() in EXIT_COMMANDS:
                print("\nSession left open; it can be resumed later.")
                break

            result = engine.handle_answer(session_id, answer)
            if isinstance(result, IllegalCommand):
                print(f"\n{result.reason}")
                break

            print(f"\nInterviewer: {result.system_output}\n")
            if show_debug:
                print_debug_info(result)

        except KeyboardInterrupt:
            print("\n\nInterview interrupted by user (Ctrl+C)")
            break

    if result.session_complete:
        print_separator()
        print(f"INTERVIEW COMPLETE ({result.stop_reason})")
        print_separator()
        state = engine.persistence.load_state(session_id, engine.schema)
        print(json.dumps(state.ready_values(), indent=2, ensure_ascii=False))
        if result.evaluation is not None:
            print(f"\nBrief ready: {result.evaluation.can_generate_brief}")

    return 0


if __name__ == '__main__':
    sys.exit(main())
