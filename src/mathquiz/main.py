"""CLI entrypoint for the tiered math quiz."""

from __future__ import annotations

import argparse
import logging
import sqlite3
import sys
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .config import configure_logging, load_config, validate_config
from .errors import ConfigError, PersistenceUnavailable, QuizError, TierLocked
from .models import HIGHEST_TIER, OPTION_KEYS, Identity, Tier
from .orchestrator import DisplayState, QuizOrchestrator
from .service import QuizService

logger = logging.getLogger(__name__)

InputFn = Callable[[str], str]
PrintFn = Callable[[str], None]
ClockFn = Callable[[], float]
BACK_COMMANDS = {":back", ":b", "back"}
MENU_QUIT_COMMANDS = {"q"}
FLOW_EXIT_COMMANDS = {":quit", ":exit", ":q"}
MENU_BACK_COMMANDS = {"b"}


class QuitApp(Exception):
    """Signal immediate app exit from nested menu flows."""


def _service(config: dict[str, Any]) -> QuizService:
    """Create app service from validated configuration."""
    return QuizService.from_config(config)


def run(argv: list[str] | None = None) -> int:
    """Run the CLI application."""
    parser = argparse.ArgumentParser(prog="mathquiz", description="Tiered multiple-choice math quiz")
    parser.add_argument("command", nargs="?", default="play", choices=["play", "sync"])
    parser.add_argument("--config", default=None, help="YAML config file (default: $MATHQUIZ_CONFIG or built-in)")
    args = parser.parse_args(argv)
    try:
        config = validate_config(load_config(args.config))
    except ConfigError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 2
    configure_logging(config)

    if args.command == "sync":
        return sync_command(config)
    return play_shell(config=config)


def sync_command(config: dict[str, Any], print_fn: PrintFn = print) -> int:
    """Replay queued results once and report what happened."""
    service = _service(config)
    try:
        synced = service.sync_pending()
        remaining = service.pending_count()
    finally:
        service.close()
    print_fn(f"Synced {synced} result(s); {remaining} still pending.")
    return 0 if remaining == 0 else 1


def play_shell(
    input_fn: InputFn = input,
    print_fn: PrintFn = print,
    *,
    config: dict[str, Any] | None = None,
    clock_fn: ClockFn = time.monotonic,
) -> int:
    """Run persistent menu-driven shell."""
    if config is None:
        config = validate_config(load_config())
    service = _service(config)
    show_feedback = bool(config["quiz"]["feedback"])
    try:
        synced = service.sync_pending()
        if synced:
            print_fn(f"Synced {synced} result(s) saved while offline.")
        selected = _select_profile(service, input_fn, print_fn)
        if selected is None:
            return 0
        try:
            while True:
                print_fn("\n=== Math Quiz ===")
                print_fn(f"Profile: {selected.name}")
                print_fn("1) Play")
                print_fn("2) Status")
                print_fn("3) Ranking")
                print_fn("4) History")
                print_fn(f"5) Sync pending results ({service.pending_count()})")
                print_fn("6) Import questions")
                print_fn("b) Back")
                print_fn("q) Quit")
                choice = input_fn("Choose: ").strip().lower()

                if choice == "1":
                    _play_flow(service, selected, input_fn, print_fn, show_feedback=show_feedback, clock_fn=clock_fn)
                elif choice == "2":
                    _status_flow(service, selected, print_fn)
                elif choice == "3":
                    _ranking_flow(service, print_fn)
                elif choice == "4":
                    _history_flow(service, selected, print_fn)
                elif choice == "5":
                    _sync_flow(service, print_fn)
                elif choice == "6":
                    _import_questions_flow(service, input_fn, print_fn)
                elif choice in MENU_BACK_COMMANDS:
                    service.sign_out()
                    switched = _select_profile(service, input_fn, print_fn)
                    if switched is None:
                        return 0
                    selected = switched
                elif choice in MENU_QUIT_COMMANDS:
                    return 0
                else:
                    print_fn("Invalid choice.")
        except QuitApp:
            return 0
    finally:
        service.close()


def _select_profile(service: QuizService, input_fn: InputFn, print_fn: PrintFn) -> Identity | None:
    """Select existing profile or create new one, then sign in."""
    while True:
        profiles = service.list_profiles()
        print_fn("\n=== Profiles ===")
        if profiles:
            for idx, profile in enumerate(profiles, start=1):
                print_fn(f"{idx}) {profile.name}")
        else:
            print_fn("No profiles yet.")
        print_fn("n) New profile")
        print_fn("d) Delete profile")
        print_fn("q) Quit")

        choice = input_fn("Select profile: ").strip().lower()
        if choice in MENU_QUIT_COMMANDS:
            return None
        if choice == "n":
            name = input_fn("New profile name: ").strip()
            if not name:
                print_fn("Profile name is required.")
                continue
            try:
                created = service.create_profile(name)
            except (ValueError, sqlite3.IntegrityError):
                print_fn("Could not create profile (name may already exist).")
                continue
            return service.sign_in(created.user_id)
        if choice == "d":
            _delete_profile_flow(service, input_fn, print_fn)
            continue

        if choice.isdigit():
            index = int(choice) - 1
            if 0 <= index < len(profiles):
                return service.sign_in(profiles[index].user_id)

        print_fn("Invalid profile selection.")


def _delete_profile_flow(service: QuizService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Delete a profile with explicit confirmation safeguard."""
    profiles = service.list_profiles()
    if not profiles:
        print_fn("No profiles available to delete.")
        return

    print_fn("\nDelete profile")
    for idx, profile in enumerate(profiles, start=1):
        print_fn(f"{idx}) {profile.name}")
    print_fn("b) Back")
    choice = input_fn("Choose profile to delete: ").strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return
    if not choice.isdigit():
        print_fn("Invalid choice.")
        return

    index = int(choice) - 1
    if not (0 <= index < len(profiles)):
        print_fn("Invalid choice.")
        return

    target = profiles[index]
    print_fn(f"WARNING: This permanently deletes profile '{target.name}' and all progress (scores, history).")
    confirm = input_fn("Type YES to confirm deletion: ").strip()
    if confirm != "YES":
        print_fn("Deletion cancelled.")
        return
    if service.delete_profile(target.user_id):
        print_fn(f"Deleted profile '{target.name}'.")
    else:
        print_fn("Profile was not found.")


def _choose_tier(service: QuizService, profile: Identity, input_fn: InputFn, print_fn: PrintFn) -> Tier | None:
    """Prompt for a tier, showing which ones are still locked."""
    max_tier = service.max_tier(profile.user_id)
    print_fn("\n=== Choose tier ===")
    for tier in Tier:
        rules = tier.rules
        marker = "" if tier <= max_tier else " [locked]"
        print_fn(f"{int(tier)}) {tier.slug} ({rules.base_points} pts, {rules.max_time_seconds}s){marker}")
    print_fn("b) Back")
    while True:
        choice = input_fn("Tier: ").strip().lower()
        if choice in MENU_BACK_COMMANDS or choice in BACK_COMMANDS:
            return None
        if choice in FLOW_EXIT_COMMANDS:
            raise QuitApp()
        try:
            return Tier.parse(choice)
        except ValueError:
            print_fn("Invalid tier.")


def _play_flow(
    service: QuizService,
    profile: Identity,
    input_fn: InputFn,
    print_fn: PrintFn,
    *,
    show_feedback: bool = True,
    clock_fn: ClockFn = time.monotonic,
) -> None:
    """Pick a tier and play sessions until the user goes back."""
    tier = _choose_tier(service, profile, input_fn, print_fn)
    if tier is None:
        return
    orchestrator = service.orchestrator()
    while tier is not None:
        try:
            orchestrator.enter(profile.user_id, tier)
        except TierLocked as exc:
            print_fn(str(exc))
            return
        if not _run_session(orchestrator, input_fn, print_fn, show_feedback=show_feedback, clock_fn=clock_fn):
            return
        tier = _results_flow(orchestrator, input_fn, print_fn)


def _run_session(
    orchestrator: QuizOrchestrator,
    input_fn: InputFn,
    print_fn: PrintFn,
    *,
    show_feedback: bool,
    clock_fn: ClockFn,
) -> bool:
    """Play one session to the results screen; False if abandoned."""
    while not orchestrator.start():
        print_fn(orchestrator.error or "Could not load questions.")
        retry = input_fn("Retry? (y/n): ").strip().lower()
        if retry in FLOW_EXIT_COMMANDS:
            raise QuitApp()
        if retry != "y":
            orchestrator.reset()
            return False

    print_fn(f"\n=== {orchestrator.tier.slug} ===")
    print_fn("Type :b to abandon the quiz, :q to quit.")
    while orchestrator.state is DisplayState.PLAYING:
        session = orchestrator.engine.session
        question = orchestrator.current_question
        if session is None or question is None:
            break
        print_fn(f"\nQuestion {session.index + 1}/{session.total_questions} ({orchestrator.countdown.remaining}s left)")
        print_fn(question.prompt)
        for key in OPTION_KEYS:
            print_fn(f"  {key}) {question.option(key)}")

        started = clock_fn()
        raw = input_fn("Answer (a-d): ").strip().lower()
        if raw in FLOW_EXIT_COMMANDS:
            orchestrator.reset()
            raise QuitApp()
        if raw in BACK_COMMANDS:
            orchestrator.reset()
            print_fn("Quiz abandoned.")
            return False

        waited = int(clock_fn() - started)
        outcome = orchestrator.tick(waited) if waited > 0 else None
        if outcome is not None:
            print_fn("Time's up.")
        elif raw not in OPTION_KEYS:
            print_fn("Please answer a, b, c or d.")
            continue
        else:
            outcome = orchestrator.answer(raw)
        if outcome is None:
            continue

        if show_feedback:
            if outcome.is_correct:
                print_fn(f"Correct. +{outcome.points_awarded} points")
            else:
                print_fn(f"Incorrect. Correct answer: {outcome.correct_key}) {question.option(outcome.correct_key)}")
        orchestrator.next()
    return orchestrator.state is DisplayState.RESULTS


def _results_flow(orchestrator: QuizOrchestrator, input_fn: InputFn, print_fn: PrintFn) -> Tier | None:
    """Show results; return the tier to play next, or None to go back."""
    finished = orchestrator.outcome
    if finished is None:
        return None
    results = finished.results
    print_fn("\n=== Results ===")
    print_fn(f"Tier: {results.tier.slug}")
    print_fn(f"Score: {results.score}")
    print_fn(f"Correct: {results.correct_answers}/{results.total_questions} ({results.accuracy:.0f}%)")
    print_fn(f"Time: {results.time_spent}s")
    if finished.queued:
        print_fn("Could not save progress; results kept locally and will sync later.")
    elif finished.progression is not None and finished.progression.unlocked_new_tier:
        print_fn(f"New tier unlocked: {finished.progression.new_max_tier.slug}")
    elif results.tier >= HIGHEST_TIER:
        print_fn("You are at the highest tier.")

    next_tier = orchestrator.next_tier()
    if next_tier is not None:
        print_fn(f"n) Next tier ({next_tier.slug})")
    print_fn("r) Play again")
    print_fn("b) Back")
    while True:
        choice = input_fn("Choose: ").strip().lower()
        if choice == "n" and next_tier is not None:
            return next_tier
        if choice == "r":
            return results.tier
        if choice in MENU_BACK_COMMANDS or choice in BACK_COMMANDS:
            orchestrator.reset()
            return None
        if choice in FLOW_EXIT_COMMANDS or choice in MENU_QUIT_COMMANDS:
            raise QuitApp()
        print_fn("Invalid choice.")


def _status_flow(service: QuizService, profile: Identity, print_fn: PrintFn) -> None:
    """Print aggregate statistics for the current profile."""
    print_fn("\n=== Status ===")
    try:
        stats = service.user_stats(profile.user_id)
    except PersistenceUnavailable:
        print_fn("Could not load status right now.")
        return
    print_fn(f"Highest unlocked tier: {stats.max_tier.slug}")
    print_fn(f"Total score: {stats.total_score}")
    print_fn(f"Games played: {stats.total_games}")
    print_fn(f"Average accuracy: {stats.average_accuracy:.1f}%")
    if stats.last_played is not None:
        print_fn(f"Last played: {stats.last_played.astimezone().strftime('%Y-%m-%d %H:%M')}")
    pending = service.pending_count()
    if pending:
        print_fn(f"Results waiting to sync: {pending}")


def _ranking_flow(service: QuizService, print_fn: PrintFn) -> None:
    """Print the global leaderboard."""
    print_fn("\n=== Ranking ===")
    try:
        entries = service.ranking()
    except PersistenceUnavailable:
        print_fn("Could not load ranking right now.")
        return
    if not entries:
        print_fn("No scores yet.")
        return
    name_width = max(len("Name"), max(len(entry.name) for entry in entries))
    print_fn(f"{'#':>3} {'Name':<{name_width}} {'Points':>7}")
    for position, entry in enumerate(entries, start=1):
        print_fn(f"{position:>3} {entry.name:<{name_width}} {entry.total_points:>7}")


def _history_flow(service: QuizService, profile: Identity, print_fn: PrintFn) -> None:
    """Print the most recent finished sessions."""
    print_fn("\n=== History ===")
    try:
        rows = service.history(profile.user_id)
    except PersistenceUnavailable:
        print_fn("Could not load history right now.")
        return
    if not rows:
        print_fn("No games played yet.")
        return
    for row in rows:
        print_fn(
            f"{_format_local(row.completed_at)}  {row.tier.slug:<8} "
            f"{row.correct_answers}/{row.total_questions} correct  {row.points_earned:>4} pts  {row.accuracy:.0f}%"
        )


def _sync_flow(service: QuizService, print_fn: PrintFn) -> None:
    """Replay locally queued results."""
    before = service.pending_count()
    if before == 0:
        print_fn("Nothing to sync.")
        return
    synced = service.sync_pending()
    print_fn(f"Synced {synced} of {before} result(s).")


def _import_questions_flow(service: QuizService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Import questions from a JSON file into the local store."""
    raw_path = input_fn("Path to question JSON file (blank to cancel): ").strip()
    if not raw_path:
        print_fn("Import cancelled.")
        return
    try:
        count = service.import_questions(raw_path)
    except (OSError, ValueError, QuizError) as exc:
        logger.debug("Question import from %s failed", raw_path, exc_info=True)
        print_fn(f"Import failed: {exc}")
        return
    print_fn(f"Imported {count} question(s).")


def _format_local(timestamp: str) -> str:
    """Convert ISO timestamp to local human-readable datetime."""
    try:
        dt = datetime.fromisoformat(timestamp)
    except ValueError:
        return timestamp
    return dt.astimezone().strftime("%Y-%m-%d %H:%M")


def main_entry() -> None:
    """Console script entrypoint."""
    raise SystemExit(run())


if __name__ == "__main__":  # pragma: no cover
    main_entry()
