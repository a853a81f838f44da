# =============================================================================
# Run Tracker Module
# =============================================================================
# This module tracks runs by saving configs, logs, retrieval results and
# answers to timestamped folders in ./runs.

import json
import logging
import yaml
from datetime import datetime
from pathlib import Path

from hybrid_rag.config import get_project_root


def log_message(message, logger=None, level='info'):
    """
    Send a progress message to the logger, or print it when there is none.

    Args:
        message: The text to report
        logger: Optional logging.Logger
        level: Logger method name ('info', 'warning', 'error', ...)
    """
    if logger:
        getattr(logger, level)(message)
    else:
        print(message)


def create_run(config, run_name=None, runs_dir=None):
    """
    Create a new run folder with a timestamp.

    Each run gets its own folder like: runs/20260128_143022_evaluate/

    Args:
        config: The configuration dictionary used for this run
        run_name: Optional custom name to append to the folder name
        runs_dir: Optional parent folder (default: <project>/runs)

    Returns:
        Path: The path to the newly created run folder
    """
    runs_dir = Path(runs_dir) if runs_dir else get_project_root() / 'runs'
    runs_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')

    if run_name:
        folder_name = f"{timestamp}_{run_name}"
    else:
        folder_name = timestamp

    run_dir = runs_dir / folder_name
    run_dir.mkdir(exist_ok=True)

    (run_dir / 'results').mkdir(exist_ok=True)

    print(f"Created run folder: {run_dir}")

    return run_dir


def save_config(run_dir, config):
    """
    Save the configuration used for this run.

    Args:
        run_dir: Path to the run folder
        config: The configuration dictionary to save
    """
    config_path = Path(run_dir) / 'config.yaml'

    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)

    print(f"Saved config to: {config_path}")


def _document_reference(document):
    return {
        'id': document.id,
        'source': document.metadata.get('sourceFile', document.metadata.get('source')),
        'score': document.raw_score,
    }


def save_results(run_dir, query, results, query_number=None):
    """
    Save ranked retrieval results for a query.

    Results are saved to runs/TIMESTAMP/results/query_001.json

    Args:
        run_dir: Path to the run folder
        query: The search query string
        results: List of RankedDocument (or Document) from the search
        query_number: Optional number for ordering multiple queries

    Returns:
        Path: The written file
    """
    results_dir = Path(run_dir) / 'results'
    results_dir.mkdir(exist_ok=True)

    if query_number is not None:
        filename = f"query_{query_number:03d}.json"
    else:
        timestamp = datetime.now().strftime('%H%M%S')
        filename = f"query_{timestamp}.json"

    results_path = results_dir / filename

    serialized = []
    for result in results:
        document = getattr(result, 'document', result)
        entry = _document_reference(document)
        entry['content'] = document.content
        if hasattr(result, 'relevance'):
            entry['relevance'] = result.relevance
        serialized.append(entry)

    data = {
        'query': query,
        'timestamp': datetime.now().isoformat(),
        'num_results': len(serialized),
        'results': serialized,
    }

    with open(results_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)

    print(f"Saved results to: {results_path}")

    return results_path


def save_response(run_dir, question, response, context_documents=None, metadata=None):
    """
    Save the generated answer for a question.

    Only ids and sources of the context documents are kept, not their text.

    Args:
        run_dir: Path to the run folder
        question: The user's question
        response: The generated answer text
        context_documents: Optional list of Documents used as context
        metadata: Optional dict with additional metadata (model, mode, ...)

    Returns:
        Path: The written file
    """
    response_path = Path(run_dir) / 'response.json'

    data = {
        'question': question,
        'response': response,
        'timestamp': datetime.now().isoformat(),
    }

    if metadata:
        data['metadata'] = metadata

    if context_documents:
        data['context_documents'] = [_document_reference(d) for d in context_documents]

    with open(response_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)

    print(f"Saved response to: {response_path}")

    return response_path


def get_logger(run_dir, name='run'):
    """
    Create a logger that writes to both console and a log file in the run folder.

    Args:
        run_dir: Path to the run folder
        name: Name for the logger (default: 'run')

    Returns:
        logging.Logger: A configured logger instance
    """
    log_path = Path(run_dir) / 'run.log'

    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)

    # Clear any existing handlers (in case this is called multiple times)
    logger.handlers.clear()

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    file_handler = logging.FileHandler(log_path, encoding='utf-8')
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logger.info(f"Logging to: {log_path}")

    return logger


def configure_console_logging(verbose=False):
    """
    Route package loggers (pipeline failures, reranker warnings) to stderr.

    Used by CLI commands that run without a tracked run folder.

    Args:
        verbose: Show INFO messages as well as warnings and errors
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )
