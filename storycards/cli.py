"""Story Cards: developer command line.

    python -m storycards seed
    python -m storycards new-session "The Lost Crown"
    python -m storycards activate 1 3
    python -m storycards play 1 "I push open the tavern door"
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from storycards import config as config_store
from storycards.cards import CardGraph
from storycards.compositor import PromptCompositor
from storycards.errors import StoryCardsError
from storycards.llm import LLMError, get_provider, provider_info
from storycards.pipeline import default_pipeline
from storycards.pipeline.orchestrator import TurnOrchestrator
from storycards.seeds import seed_cards
from storycards.storage import Storage

logger = logging.getLogger("storycards")


def _parse_order(values: list[str]) -> dict[str, int]:
    orders = {}
    for item in values:
        name, sep, order = item.partition("=")
        if not sep or not order.lstrip("-").isdigit():
            raise SystemExit(f"--order expects NAME=NUMBER, got {item!r}")
        orders[name] = int(order)
    return orders


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storycards", description="Card-driven interactive fiction")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: $DATA_DIR or ./data)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed", help="Insert the built-in cards")

    p = sub.add_parser("cards", help="List cards")
    p.add_argument("--type", dest="card_type", default=None)
    p.add_argument("--tag", default=None)

    p = sub.add_parser("new-session", help="Start a new story")
    p.add_argument("name", nargs="?", default="New Story")

    for name in ("activate", "deactivate"):
        p = sub.add_parser(name, help=f"{name.capitalize()} a card in a session")
        p.add_argument("session", type=int)
        p.add_argument("card", type=int)

    p = sub.add_parser("prompt", help="Show the system prompt for the next turn")
    p.add_argument("session", type=int)
    p.add_argument("--focus", type=int, default=None)

    p = sub.add_parser("play", help="Play one turn")
    p.add_argument("session", type=int)
    p.add_argument("text")
    p.add_argument("--focus", type=int, default=None)

    p = sub.add_parser("history", help="Show a session's turns")
    p.add_argument("session", type=int)

    p = sub.add_parser("scripts", help="List or change pipeline scripts")
    p.add_argument("--enable", action="append", default=[], metavar="NAME")
    p.add_argument("--disable", action="append", default=[], metavar="NAME")
    p.add_argument("--order", action="append", default=[], metavar="NAME=N")

    sub.add_parser("providers", help="List LLM providers")
    return parser


def _cmd_cards(graph: CardGraph, args) -> None:
    cards = graph.get_by_type(args.card_type) if args.card_type else graph.list_all()
    if args.tag:
        cards = [c for c in cards if args.tag in c.tags]
    for card in cards:
        tags = f" [{', '.join(card.tags)}]" if card.tags else ""
        print(f"{card.id:>4}  {card.type:<9} {card.rarity:<7} {card.source:<14} {card.name}{tags}")


def _cmd_scripts(data_dir: Path, graph: CardGraph, cfg: dict, args) -> None:
    changes: dict[str, dict] = {}
    for name in args.enable:
        changes.setdefault(name, {})["enabled"] = True
    for name in args.disable:
        changes.setdefault(name, {})["enabled"] = False
    for name, order in _parse_order(args.order).items():
        changes.setdefault(name, {})["order"] = order

    pipeline = default_pipeline(graph)
    known = {s["name"] for s in pipeline.list_scripts()}
    unknown = sorted(set(changes) - known)
    if unknown:
        raise SystemExit(f"Unknown script(s): {', '.join(unknown)}")
    if changes:
        cfg = config_store.update_config(data_dir, {"scripts": changes})
    pipeline.apply_settings(cfg["scripts"])
    for script in pipeline.list_scripts():
        state = "on " if script["enabled"] else "off"
        print(f"{script['order']:>4}  {state}  {script['name']:<20} {script['description']}")


async def _cmd_play(orchestrator: TurnOrchestrator, args) -> None:
    result = await orchestrator.run_turn(args.session, args.text, args.focus)
    print(result.response)
    print()
    print(f"[turn {result.turn_number} · {result.token_usage.total_tokens} tokens · "
          f"event: {result.extracted_event}]")
    for note in result.notifications:
        print(f"  {note.get('type', 'info')}: {note.get('message', '')}")


def run(args) -> None:
    data_dir = args.data_dir or config_store.data_dir()
    storage = Storage(data_dir)
    graph = CardGraph(storage)
    cfg = config_store.get_config(data_dir)

    if args.command == "seed":
        print(f"Seeded {seed_cards(graph)} cards")
    elif args.command == "cards":
        _cmd_cards(graph, args)
    elif args.command == "new-session":
        session = storage.create_session(args.name)
        print(f"Session {session.id}: {session.name}")
    elif args.command == "activate":
        session = storage.activate_card(args.session, args.card)
        print(f"Active cards: {session.active_cards}")
    elif args.command == "deactivate":
        session = storage.deactivate_card(args.session, args.card)
        print(f"Active cards: {session.active_cards}")
    elif args.command == "history":
        for turn in storage.get_turns(args.session):
            print(f"--- turn {turn.turn_number} ---")
            print(f"> {turn.player_input}")
            print(turn.llm_response)
    elif args.command == "scripts":
        _cmd_scripts(data_dir, graph, cfg, args)
    elif args.command == "providers":
        for info in provider_info():
            key = "api key" if info["requires_api_key"] else "no key"
            print(f"{info['name']:<11} {info['display_name']:<20} {key:<8} {info['default_model']}")
    elif args.command in ("prompt", "play"):
        compositor = PromptCompositor(graph, token_budget=cfg["token_budget"])
        pipeline = default_pipeline(graph)
        pipeline.apply_settings(cfg["scripts"])
        llm = get_provider(cfg["llm_provider"], config_store.provider_settings(cfg))
        orchestrator = TurnOrchestrator(storage, graph, llm, compositor, pipeline)
        if args.command == "prompt":
            preview = orchestrator.preview_prompt(args.session, args.focus)
            print(preview.system_prompt)
            print()
            print(f"[~{preview.token_report['total']} tokens, "
                  f"{preview.active_card_count} active cards]")
        else:
            asyncio.run(_cmd_play(orchestrator, args))


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    level = "DEBUG" if args.verbose else os.getenv("LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    try:
        run(args)
    except (StoryCardsError, LLMError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0
