"""Administrative command line: prompts, dialogs and token usage.

    python -m tutor_bot.admin prompts list
    python -m tutor_bot.admin prompts create "Tutor" --content-file prompt.txt --activate
    python -m tutor_bot.admin dialogs stats
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from tutor_bot.errors import StorageFailure
from tutor_bot.models import utc_now_iso
from tutor_bot.reports import dialog_stats, list_users
from tutor_bot.storage import DialogStore, PromptStore
from tutor_bot.usage_log import tokens_stat


def _parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="AI tutor bot administration")
    parser.add_argument(
        "--data-dir",
        type=str,
        default=os.environ.get("DATA_DIR", "data"),
        help="Directory with dialogs/ and prompts/ (default: $DATA_DIR or ./data)",
    )
    sub = parser.add_subparsers(dest="area", required=True)

    prompts = sub.add_parser("prompts", help="Manage system prompts")
    prompts_sub = prompts.add_subparsers(dest="action", required=True)
    prompts_sub.add_parser("list", help="List prompts; the active one is marked with *")
    show = prompts_sub.add_parser("show", help="Print a prompt")
    show.add_argument("prompt_id")
    create = prompts_sub.add_parser("create", help="Create a prompt")
    create.add_argument("name")
    create.add_argument("--content", type=str, default=None)
    create.add_argument("--content-file", type=str, default=None)
    create.add_argument("--activate", action="store_true")
    update = prompts_sub.add_parser("update", help="Update a prompt")
    update.add_argument("prompt_id")
    update.add_argument("--name", type=str, default=None)
    update.add_argument("--content", type=str, default=None)
    update.add_argument("--content-file", type=str, default=None)
    delete = prompts_sub.add_parser("delete", help="Delete a prompt")
    delete.add_argument("prompt_id")
    activate = prompts_sub.add_parser("activate", help="Mark a prompt active")
    activate.add_argument("prompt_id")

    dialogs = sub.add_parser("dialogs", help="Inspect conversation logs")
    dialogs_sub = dialogs.add_subparsers(dest="action", required=True)
    dialogs_sub.add_parser("users", help="Users with history, most recent first")
    dshow = dialogs_sub.add_parser("show", help="Print one user's history")
    dshow.add_argument("user_id")
    dialogs_sub.add_parser("stats", help="Aggregate statistics")
    dclear = dialogs_sub.add_parser("clear", help="Clear one user's history")
    dclear.add_argument("user_id")

    usage = sub.add_parser("usage", help="Token usage from the JSONL log")
    usage.add_argument(
        "--usage-log-file",
        type=str,
        default=os.environ.get("USAGE_LOG_FILE"),
        help="Path to the JSONL log (default: <data-dir>/usage.jsonl)",
    )
    usage.add_argument("--top", type=int, default=5)
    return parser.parse_args(argv)


def _read_content(args: argparse.Namespace) -> Optional[str]:
    if args.content_file:
        return Path(args.content_file).read_text(encoding="utf-8")
    return args.content


def _prompts(args: argparse.Namespace) -> int:
    store = PromptStore(args.data_dir)
    if args.action == "list":
        active_id = store.get_active_prompt_id()
        prompts = store.list_prompts()
        if not prompts:
            print("No prompts.")
        for p in prompts:
            marker = "*" if p.id == active_id else " "
            print(f"{marker} {p.id}  {p.name}  (updated {p.updated_at})")
        if active_id and store.get_prompt(active_id) is None:
            print(f"Warning: active prompt {active_id} does not exist.")
        return 0
    if args.action == "show":
        prompt = store.get_prompt(args.prompt_id)
        if prompt is None:
            print(f"Prompt {args.prompt_id} not found.", file=sys.stderr)
            return 1
        print(f"{prompt.name} ({prompt.id})\n\n{prompt.content}")
        return 0
    if args.action == "create":
        content = _read_content(args)
        if not content or not args.name.strip():
            print("Both name and content are required.", file=sys.stderr)
            return 1
        prompt = store.create_prompt(args.name.strip(), content)
        if args.activate:
            store.set_active_prompt_id(prompt.id)
        print(prompt.id)
        return 0
    if args.action == "update":
        prompt = store.update_prompt(args.prompt_id, name=args.name, content=_read_content(args))
        if prompt is None:
            print(f"Prompt {args.prompt_id} not found.", file=sys.stderr)
            return 1
        print(f"Updated {prompt.id}")
        return 0
    if args.action == "delete":
        if not store.delete_prompt(args.prompt_id):
            print(f"Prompt {args.prompt_id} not found.", file=sys.stderr)
            return 1
        print(f"Deleted {args.prompt_id}")
        return 0
    if args.action == "activate":
        if store.get_prompt(args.prompt_id) is None:
            print(f"Prompt {args.prompt_id} not found.", file=sys.stderr)
            return 1
        store.set_active_prompt_id(args.prompt_id)
        print(f"Active prompt: {args.prompt_id}")
        return 0
    return 2


def _dialogs(args: argparse.Namespace) -> int:
    store = DialogStore(args.data_dir)
    if args.action == "users":
        users = list_users(store)
        if not users:
            print("No dialogs.")
        for u in users:
            print(f"{u.user_id}  {u.username or '-'}  messages={u.message_count}  last={u.last_message_at}")
        return 0
    if args.action == "show":
        conversation = store.load(args.user_id)
        if conversation is None:
            print(f"No dialog for user {args.user_id}.", file=sys.stderr)
            return 1
        print(f"{conversation.display_name or conversation.user_id}, last trim {conversation.last_trim_at}")
        for m in conversation.messages:
            print(f"[{m.role}] {m.text}")
        return 0
    if args.action == "stats":
        stats = dialog_stats(store)
        print(f"Total users: {stats.total_users}")
        print(f"Total messages: {stats.total_messages}")
        print(f"Active today: {stats.active_today}")
        print(f"Average messages per user: {stats.average_messages_per_user}")
        return 0
    if args.action == "clear":
        conversation = store.load(args.user_id)
        if conversation is None:
            print(f"No dialog for user {args.user_id}.", file=sys.stderr)
            return 1
        conversation.messages = []
        conversation.last_trim_at = utc_now_iso()
        store.save(conversation)
        print(f"Cleared {args.user_id}")
        return 0
    return 2


def _usage(args: argparse.Namespace) -> int:
    path = args.usage_log_file or os.path.join(args.data_dir, "usage.jsonl")
    total, top_users = tokens_stat(path, top=args.top)
    print(f"Total tokens: {total}")
    if not top_users:
        print("Top users: no data.")
        return 0
    print(f"Top {len(top_users)} users by tokens:")
    for i, (uid, uname, t) in enumerate(top_users, start=1):
        who = f"@{uname}" if uname else f"id={uid}"
        print(f"{i}. {who}: {t}")
    return 0


def main(argv: Optional[list] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        if args.area == "prompts":
            return _prompts(args)
        if args.area == "dialogs":
            return _dialogs(args)
        return _usage(args)
    except (StorageFailure, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
