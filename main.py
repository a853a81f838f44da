# =============================================================================
# Hybrid RAG - Main CLI Entry Point
# =============================================================================
# Command-line interface for the question-answering pipeline and its
# evaluation harness.
#
# Usage:
#   python main.py search "your question"   # Retrieve and rank passages
#   python main.py ask "your question"      # Answer one question
#   python main.py chat                     # Interactive conversation
#   python main.py evaluate                 # Score the pipeline on a question set
#
# All commands support:
#   --config FILE    Load a custom config YAML file
#   --verbose        Print the effective configuration

import argparse
import logging
import sys

from openai import OpenAIError
from qdrant_client.http.exceptions import ApiException

from hybrid_rag.config import (
    get_secrets,
    load_config,
    print_config,
    require_secrets,
    resolve_path,
)
from hybrid_rag.conversation import USER, ConversationTurn
from hybrid_rag.errors import PipelineError, RAGError
from hybrid_rag.evaluation import RAGEvaluator, load_questions
from hybrid_rag.pipeline import answer, ask, create_providers, run_pipeline
from hybrid_rag.reranking import rerank_with_details
from hybrid_rag.run_tracker import (
    configure_console_logging,
    create_run,
    get_logger,
    save_config,
    save_response,
    save_results,
)

log = logging.getLogger(__name__)

# =============================================================================
# Helpers
# =============================================================================

def build_overrides(args):
    """Turn retrieval flags shared by several commands into config overrides."""
    cli_overrides = {}
    if getattr(args, 'simple', False):
        cli_overrides['retrieval'] = {'mode': 'simple'}
    if getattr(args, 'top_k', None):
        cli_overrides.setdefault('retrieval', {})['hybrid_top_k'] = args.top_k
        cli_overrides['retrieval']['simple_top_k'] = args.top_k
    if getattr(args, 'no_rerank', False):
        cli_overrides['reranking'] = {'enabled': False}
    return cli_overrides


def prepare(args, title):
    """Print the banner, load config and check credentials."""
    print("=" * 70)
    print(f"Hybrid RAG - {title}")
    print("=" * 70)

    config = load_config(args.config, build_overrides(args))

    if args.verbose:
        print("\nConfiguration:")
        print_config(config)
        print()

    secrets = require_secrets(get_secrets())
    return config, secrets


# =============================================================================
# Command Handlers
# =============================================================================

def cmd_search(args):
    """
    Handle the 'search' command.

    Runs retrieval (and fusion/reranking in hybrid mode) without generating
    an answer, and prints the ranked passages.
    """
    config, secrets = prepare(args, "Search")

    if args.track:
        run_dir = create_run(config, "search")
        logger = get_logger(run_dir)
        save_config(run_dir, config)
    else:
        run_dir = None
        logger = None

    rerank = config.get('reranking', {}).get('enabled', True)
    hybrid = config.get('retrieval', {}).get('mode', 'hybrid') == 'hybrid'
    if hybrid and rerank:
        # Rerank separately below so the rank changes can be shown
        config = dict(config, reranking=dict(config.get('reranking', {}), enabled=False))

    conversation = [ConversationTurn(role=USER, content=args.question)]
    providers = create_providers(config, secrets)
    try:
        state = run_pipeline(conversation, config, providers, logger, generate=False)
        results = state.candidates
        details = None
        if hybrid and rerank:
            results, details = rerank_with_details(state.query, state.candidates, providers.chat, config, logger)
    except Exception as e:
        (logger or log).exception(f"Search failed: {e}")
        raise PipelineError() from e
    finally:
        providers.close()

    if run_dir:
        save_results(run_dir, args.question, results, query_number=1)

    top_k = args.top_k or len(results)
    print(f"\n{'=' * 70}")
    print(f"Top {min(top_k, len(results))} results:")
    print('=' * 70)

    for i, result in enumerate(results[:top_k], 1):
        document = getattr(result, 'document', result)
        score_str = f"score: {document.raw_score:.4f}" if document.raw_score is not None else "score: n/a"
        if hasattr(result, 'relevance'):
            score_str += f", relevance: {result.relevance}"

        print(f"\n{i}. {document.id} ({score_str})")
        print(f"   Source: {document.metadata.get('sourceFile', 'N/A')}")
        print(f"   Content:\n   {document.content[:200]}...")

    if details and args.verbose:
        print("\nRank changes after reranking:")
        for change in details['rank_changes']:
            print(f"  {change['id']}: {change['old_rank']} -> {change['new_rank']}")

    return 0


def cmd_ask(args):
    """
    Handle the 'ask' command.

    Runs the full pipeline once and prints the answer.
    """
    config, secrets = prepare(args, "Ask")

    if args.track:
        run_dir = create_run(config, "ask")
        logger = get_logger(run_dir)
        save_config(run_dir, config)
    else:
        run_dir = None
        logger = None
        configure_console_logging(args.verbose)

    conversation = [ConversationTurn(role=USER, content=args.question)]

    state = ask(conversation, config, secrets, logger=logger)

    if run_dir:
        save_response(
            run_dir,
            args.question,
            state.answer,
            state.context_documents,
            metadata={
                'model': config.get('response', {}).get('model'),
                'mode': config.get('retrieval', {}).get('mode'),
            },
        )

    print(f"\n{state.answer}")
    return 0


def cmd_chat(args):
    """
    Handle the 'chat' command.

    Interactive loop; the conversation so far is sent with every question.
    An empty line or Ctrl-D ends the session.
    """
    config, secrets = prepare(args, "Chat")
    configure_console_logging(args.verbose)

    print("Ask a question (empty line to quit).")
    conversation = []

    while True:
        try:
            question = input("\nyou> ").strip()
        except EOFError:
            print()
            break

        if not question:
            break

        conversation.append(ConversationTurn(role=USER, content=question))
        try:
            conversation = answer(conversation, config, secrets)
        except RAGError as e:
            # Drop the unanswered question so the transcript stays paired
            conversation.pop()
            print(f"assistant> {e}")
            continue

        print(f"assistant> {conversation[-1].content}")

    return 0


def cmd_evaluate(args):
    """
    Handle the 'evaluate' command.

    Replays the question set through the pipeline and writes
    evaluation_results.csv and metrics.json.
    """
    config, secrets = prepare(args, "Evaluation")

    questions_file = args.questions or config.get('evaluation', {}).get('questions_file', 'evaluation/questions.json')
    questions = load_questions(resolve_path(questions_file))

    # Always create a run folder for evaluations
    run_dir = create_run(config, "evaluate")
    logger = get_logger(run_dir)
    save_config(run_dir, config)

    output_dir = args.output_dir or config.get('evaluation', {}).get('output_dir')
    output_dir = resolve_path(output_dir) if output_dir else run_dir

    providers = create_providers(config, secrets)
    try:
        evaluator = RAGEvaluator(config, providers, logger=logger)
        metrics = evaluator.evaluate(questions, output_dir)
    finally:
        providers.close()

    logger.info("Evaluation completed successfully")
    for key, value in metrics.to_dict().items():
        logger.info(f"  {key}: {value}")

    return 0


# =============================================================================
# Main Entry Point
# =============================================================================

def add_common_arguments(parser):
    parser.add_argument(
        '--config', '-c',
        help='Path to custom config YAML file'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Print detailed configuration'
    )


def add_retrieval_arguments(parser):
    parser.add_argument(
        '--top-k', '-k',
        type=int,
        help='Number of vector matches to retrieve'
    )
    parser.add_argument(
        '--simple', '-s',
        action='store_true',
        help='Vector search only (skip keyword search, fusion and reranking)'
    )
    parser.add_argument(
        '--no-rerank',
        action='store_true',
        help='Skip LLM reranking in hybrid mode'
    )


def build_parser():
    parser = argparse.ArgumentParser(
        description='Hybrid RAG - Answer questions from your article index',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py search "What is server-side rendering?"
  python main.py ask "Which article covers caching?"
  python main.py ask "query" --simple            # Vector search only
  python main.py chat                            # Multi-turn conversation
  python main.py evaluate --questions evaluation/questions.json
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # -------------------------------------------------------------------------
    # Search command
    # -------------------------------------------------------------------------
    search_parser = subparsers.add_parser(
        'search',
        help='Retrieve and rank passages for a question'
    )
    search_parser.add_argument('question', help='The question to search for')
    add_common_arguments(search_parser)
    add_retrieval_arguments(search_parser)
    search_parser.add_argument(
        '--track', '-t',
        action='store_true',
        help='Create a run folder to track this operation'
    )

    # -------------------------------------------------------------------------
    # Ask command
    # -------------------------------------------------------------------------
    ask_parser = subparsers.add_parser(
        'ask',
        help='Answer a single question'
    )
    ask_parser.add_argument('question', help='The question to answer')
    add_common_arguments(ask_parser)
    add_retrieval_arguments(ask_parser)
    ask_parser.add_argument(
        '--track', '-t',
        action='store_true',
        help='Create a run folder and save the answer with its sources'
    )

    # -------------------------------------------------------------------------
    # Chat command
    # -------------------------------------------------------------------------
    chat_parser = subparsers.add_parser(
        'chat',
        help='Have a multi-turn conversation'
    )
    add_common_arguments(chat_parser)
    add_retrieval_arguments(chat_parser)

    # -------------------------------------------------------------------------
    # Evaluate command
    # -------------------------------------------------------------------------
    evaluate_parser = subparsers.add_parser(
        'evaluate',
        help='Score the pipeline on a labeled question set'
    )
    add_common_arguments(evaluate_parser)
    evaluate_parser.add_argument(
        '--questions', '-q',
        help='Path to the questions JSON file (default: evaluation.questions_file)'
    )
    evaluate_parser.add_argument(
        '--output-dir', '-o',
        help='Where to write evaluation_results.csv and metrics.json (default: evaluation.output_dir, else the run folder)'
    )

    return parser


COMMANDS = {
    'search': cmd_search,
    'ask': cmd_ask,
    'chat': cmd_chat,
    'evaluate': cmd_evaluate,
}


def main(argv=None):
    """
    Main entry point - parse arguments and run the appropriate command.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return COMMANDS[args.command](args)
    except (RAGError, OSError, ValueError, OpenAIError, ApiException) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
