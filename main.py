"""
Console Test Harness for AssessmentManager

Simple console loop to run an assessment end to end without Flask.
Set ASSESSMENT_LLM_MODEL to use the text-generation model.
"""

import logging
import sys

from backend.commands import FinalizeSession, StartSession, SubmitAnswer
from backend.config import AppConfig
from backend.results import ErrorResult
from app import build_manager

# Configure logging
logging.basicConfig(
    level=logging.WARNING,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def print_question(question: dict, block: str):
    """Print a question with its options"""
    print(f"\n[{block}] {question['prompt']}")
    for index, option in enumerate(question.get('options', []), start=1):
        print(f"  {index}. {option['label']}")
    if question['inputType'] == 'multi-choice':
        print("  (comma-separated numbers)")
    elif question['inputType'] == 'numeric':
        print("  (number)")


def to_raw_value(question: dict, user_input: str):
    """Map console input to the raw value the API expects"""
    options = question.get('options', [])
    if not options:
        return user_input

    def pick(token):
        token = token.strip()
        if token.isdigit() and 1 <= int(token) <= len(options):
            return options[int(token) - 1]['value']
        return token

    if question['inputType'] == 'multi-choice':
        return [pick(token) for token in user_input.split(',') if token.strip()]
    return pick(user_input)


def print_diagnostic(diagnostic: dict):
    """Print the final diagnostic"""
    print(f"\nPersona: {diagnostic['persona']} ({diagnostic['expertise']}, "
          f"confidence {diagnostic['confidence']})")
    print("\nArea health:")
    for area in diagnostic['areas']:
        marker = " *" if area['deepDive'] else ""
        print(f"  - {area['name']}: {area['healthScore']} ({area['status']}){marker}")

    if diagnostic['riskFlags']:
        print("\nRisk flags:")
        for flag in diagnostic['riskFlags']:
            print(f"  - {flag['prompt']} -> {flag['label']}")

    if diagnostic['recommendations']:
        print("\nRecommendations:")
        for rec in diagnostic['recommendations']:
            for action in rec['actions']:
                print(f"  - [{rec['name']}] {action}")

    print(f"\nSummary ({diagnostic['summarySource']}):")
    print(diagnostic['executiveSummary'])


def main():
    """Run console assessment"""
    print_separator()
    print("ADAPTIVE ASSESSMENT - CONSOLE TEST")
    print_separator()

    try:
        manager = build_manager(AppConfig.from_env())
    except Exception as e:
        print(f"\nFailed to initialize: {e}")
        import traceback
        traceback.print_exc()
        return 1

    print("Type 'quit', 'exit', or 'stop' to end early\n")

    result = manager.handle(StartSession())
    if isinstance(result, ErrorResult):
        print(f"\nERROR: {result.message}")
        return 1
    session_id = result.session_id

    while not result.complete:
        decision = result.decision
        print_question(decision.question.to_dict(), decision.block.value)

        try:
            user_input = input("> ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nAssessment interrupted by user")
            return 0

        if user_input.lower() in ('quit', 'exit', 'stop'):
            print("\nAssessment ended early by user")
            return 0
        if not user_input:
            print("Please enter a response.")
            continue

        turn = manager.handle(SubmitAnswer(
            session_id=session_id,
            question_id=decision.question.id,
            value=to_raw_value(decision.question.to_dict(), user_input),
        ))
        if isinstance(turn, ErrorResult):
            print(f"  {turn.message}")
            continue
        result = turn

    print_separator()
    print("ASSESSMENT COMPLETE")
    print_separator()

    report = manager.handle(FinalizeSession(session_id=session_id))
    if isinstance(report, ErrorResult):
        print(f"\nERROR: {report.message}")
        return 1

    print_diagnostic(report.diagnostic)
    print_separator()
    return 0


if __name__ == '__main__':
    sys.exit(main())
