"""CLI: context-budget init, config validate, status, reset, list."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from ..config import load_config, validate_config
from ..core.calibration import CalibrationStateMachine
from ..storage.filesystem import FilesystemStateStore
from ..storage.sqlite import SQLiteStateStore

DEFAULT_CONFIG_TEMPLATE = """\
version: "0.1"
token_counter: estimate

eviction:
  enabled: true
  target_token_budget: 8000
  batch_size: 20
  min_messages_to_keep: 10
  snap_to_batch: false
  message_length_threshold: 10
  include_user_messages: true

calibration:
  auto_calibrate_target: false
  target_utilization: 0.80
  tolerance: 0.05
  max_tolerance: 0.15
  training_generations: 2
  stable_threshold: 5

summarization:
  auto_summarize: true
  provider: ollama
  model: qwen3:4b-instruct-2507-fp16
  max_words: 50
  injection:
    position: in_prompt
    depth: 4

memory:
  enabled: false
  qdrant_url: http://localhost:6333
  collection: context_budget_memories
  embedding_provider: openai
  embedding_url: http://127.0.0.1:11434/v1/embeddings
  embedding_model: nomic-embed-text
  limit: 5
  score_threshold: 0.3
  retain_recent_messages: 5

storage:
  backend: sqlite
  sqlite:
    path: .context-budget/state.db

providers:
  ollama:
    type: generic_openai
    base_url: http://127.0.0.1:11434/v1
    model: qwen3:4b-instruct-2507-fp16
"""


def _get_store(config_path: str | None = None):
    config = load_config(config_path)
    if config.storage.backend == "filesystem":
        return FilesystemStateStore(root=config.storage.root), config
    return SQLiteStateStore(db_path=config.storage.sqlite_path), config


def cmd_init(args):
    """Write a default config file to the current directory."""
    output = Path.cwd() / "context-budget.yaml"
    if output.exists() and not args.force:
        print(f"Config file already exists: {output}", file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        sys.exit(1)

    output.write_text(DEFAULT_CONFIG_TEMPLATE)
    print(f"Created {output}")
    print()
    print("Next steps:")
    print("  1. Start Ollama:      ollama serve")
    print("  2. Validate config:   context-budget config validate")


def cmd_config_validate(args):
    """Validate config file."""
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Target budget: {config.eviction.target_token_budget:,}")
        print(f"  Batch size: {config.eviction.batch_size}")
        print(f"  Self-tuning: {'on' if config.calibration.auto_calibrate_target else 'off'}")
        print(f"  Summaries: {config.summarization.provider} ({config.summarization.model})")
        print(f"  Memory: {'on' if config.memory.enabled else 'off'}")
        print(f"  Storage: {config.storage.backend}")


def cmd_status(args):
    """Show the persisted ledger for one conversation."""
    store, config = _get_store(args.config)
    try:
        state = store.load_state(args.conversation)
    finally:
        store.close()
    if state is None:
        print(f"No ledger for conversation: {args.conversation}", file=sys.stderr)
        sys.exit(1)

    print(f"Conversation:      {state.conversation_id}")
    print(f"Cutoff index:      {state.cutoff_index}")
    print(f"Target budget:     {state.target_token_budget:,}")
    print(f"Correction factor: {state.correction_factor:.3f}")
    print(f"Phase:             {state.calibration_state.value}")
    print(f"Stable count:      {state.stable_count}/{config.calibration.stable_threshold}")
    print(f"Deletions:         {state.deletion_count}/{config.calibration.deletion_tolerance}")
    if state.memory_token_history:
        avg = sum(state.memory_token_history) / len(state.memory_token_history)
        print(f"Memory tokens:     {avg:,.0f} avg over {len(state.memory_token_history)}")
    print(f"Saved at:          {state.saved_at.strftime('%Y-%m-%d %H:%M:%S')}")


def cmd_reset(args):
    """Reset the cutoff (and optionally calibration) of a persisted ledger."""
    store, config = _get_store(args.config)
    try:
        state = store.load_state(args.conversation)
        if state is None:
            print(f"No ledger for conversation: {args.conversation}", file=sys.stderr)
            sys.exit(1)
        state.cutoff_index = 0
        if args.calibration:
            CalibrationStateMachine(config.calibration).reset(state)
            state.deletion_count = 0
            state.memory_token_history = []
        store.save_state(state)
    finally:
        store.close()
    what = "cutoff and calibration" if args.calibration else "cutoff"
    print(f"Reset {what} for {args.conversation}")


def cmd_list(args):
    """List conversations with a persisted ledger."""
    store, config = _get_store(args.config)
    try:
        conversations = store.list_conversations()
        if not conversations:
            print("No persisted conversations yet.")
            return
        print(f"{'Conversation':<40} {'Cutoff':>7} {'Target':>8} {'Factor':>7} {'Phase':>18}")
        print("-" * 84)
        for conversation_id in conversations:
            state = store.load_state(conversation_id)
            if state is None:
                continue
            print(
                f"{conversation_id:<40} {state.cutoff_index:>7} {state.target_token_budget:>8,} "
                f"{state.correction_factor:>7.3f} {state.calibration_state.value:>18}"
            )
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        prog="context-budget",
        description="Token budget controller for long-running LLM conversations",
    )
    parser.add_argument("--config", "-c", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command")

    # init
    init_parser = subparsers.add_parser("init", help="Write a default config file")
    init_parser.add_argument("--force", action="store_true", help="Overwrite existing config")

    # status
    status_parser = subparsers.add_parser("status", help="Show a conversation's persisted ledger")
    status_parser.add_argument("conversation", help="Conversation id")

    # reset
    reset_parser = subparsers.add_parser("reset", help="Reset a conversation's cutoff")
    reset_parser.add_argument("conversation", help="Conversation id")
    reset_parser.add_argument(
        "--calibration", action="store_true",
        help="Also reset calibration phase and correction factor",
    )

    # list
    subparsers.add_parser("list", help="List persisted conversations")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        cmd_init(args)
    elif args.command == "status":
        cmd_status(args)
    elif args.command == "reset":
        cmd_reset(args)
    elif args.command == "list":
        cmd_list(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: context-budget config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
