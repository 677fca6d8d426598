"""CLI entrypoint for the IFRS 17 quiz trainer."""

from __future__ import annotations

import argparse
import logging
from collections.abc import Callable, Sequence
from dataclasses import replace
from pathlib import Path

from .achievements import ACHIEVEMENTS, ACHIEVEMENTS_BY_ID, display_for
from .config import GameConfig, load_config
from .engine import (
    START_ACTIVE,
    START_AUTH_REQUIRED,
    START_AWAITING_COMPLETION,
    START_COMPLETED,
    START_LOCKED,
    START_OK,
    ModuleResult,
)
from .identity import AuthenticatedIdentity, LocalIdentityBoundary
from .models import Leaderboard, LeaderboardEntry
from .powerups import ELIMINATE, HINT, POWER_UP_INFO, SKIP
from .service import TrainingService, create_service
from .state import XP_PER_LEVEL

InputFn = Callable[[str], str]
PrintFn = Callable[[str], None]
BACK_COMMANDS = {":back", ":b", "back"}
MENU_QUIT_COMMANDS = {"q"}
FLOW_EXIT_COMMANDS = {":quit", ":exit", ":q"}
MENU_BACK_COMMANDS = {"b"}
POWER_UP_KEYS = {"h": HINT, "e": ELIMINATE, "s": SKIP}
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class QuitApp(Exception):
    """Signal immediate app exit from nested menu flows."""


def _service(config: GameConfig, boundary: LocalIdentityBoundary) -> TrainingService:
    """Create app service; the shell drives question advancement itself."""
    return create_service(replace(config, advance_delay=None), boundary)


def run(argv: list[str] | None = None) -> int:
    """Run the CLI application."""
    parser = argparse.ArgumentParser(prog="ifrs17trainer", description="Gamified IFRS 17 quiz")
    parser.add_argument("command", nargs="?", default="play", choices=["play"])
    parser.add_argument("--db", help="Path to the local progress database")
    parser.add_argument("--log-level", default="WARNING", choices=LOG_LEVELS, help="Logging verbosity")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config()
    if args.db:
        config = replace(config, db_path=Path(args.db))
    return play_shell(config)


def play_shell(config: GameConfig | None = None, input_fn: InputFn = input, print_fn: PrintFn = print) -> int:
    """Run persistent menu-driven shell."""
    boundary = LocalIdentityBoundary()
    service = _service(config or GameConfig(), boundary)
    try:
        service.start()
        try:
            while True:
                view = service.view()
                print_fn("\n=== IFRS 17 Trainer ===")
                print_fn(_player_line(service))
                print_fn(f"Score: {view.state.score} | Level: {view.state.level} | Streak: {view.state.streak}")
                print_fn("1) Play a module")
                print_fn("2) Status")
                print_fn("3) Achievements")
                print_fn("4) Account")
                print_fn("5) Export progress")
                print_fn("6) Import progress")
                print_fn("7) Reset progress")
                print_fn("8) Leaderboard")
                print_fn("q) Quit")
                choice = input_fn("Choose: ").strip().lower()

                if choice == "1":
                    _modules_flow(service, boundary, input_fn, print_fn)
                elif choice == "2":
                    _status_flow(service, print_fn)
                elif choice == "3":
                    _achievements_flow(service, print_fn)
                elif choice == "4":
                    _account_flow(service, boundary, input_fn, print_fn)
                elif choice == "5":
                    _export_progress_flow(service, input_fn, print_fn)
                elif choice == "6":
                    _import_progress_flow(service, input_fn, print_fn)
                elif choice == "7":
                    _reset_flow(service, input_fn, print_fn)
                elif choice == "8":
                    _leaderboard_flow(service, input_fn, print_fn)
                elif choice in MENU_QUIT_COMMANDS:
                    return 0
                else:
                    print_fn("Invalid choice.")
        except QuitApp:
            return 0
    finally:
        service.close()


def _player_line(service: TrainingService) -> str:
    identity = service.identity
    if identity is None:
        return "Player: (none)"
    kind = "guest" if identity.is_guest else "signed in"
    return f"Player: {identity.name} ({kind})"


def _variant(service: TrainingService) -> str | None:
    identity = service.identity
    return identity.variant if identity is not None else None


def _modules_flow(
    service: TrainingService, boundary: LocalIdentityBoundary, input_fn: InputFn, print_fn: PrintFn
) -> None:
    """List modules and start or resume the chosen one."""
    statuses = service.module_statuses()
    print_fn("\n=== Modules ===")
    title_width = max(len("Title"), max(len(item.module.title) for item in statuses))
    header = f"{'#':>2} {'Title':<{title_width}} Status"
    print_fn(header)
    print_fn("-" * len(header))
    for item in statuses:
        if item.completed:
            status = "completed"
        elif item.active:
            status = "in progress"
        elif item.gated:
            status = "sign-up required"
        elif item.unlocked:
            status = "unlocked"
        else:
            status = "locked"
        print_fn(f"{item.module.id + 1:>2} {item.module.icon} {item.module.title:<{title_width}} {status}")
    print_fn("b) Back")
    print_fn("q) Quit")

    choice = input_fn("Choose module: ").strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return
    if choice in MENU_QUIT_COMMANDS:
        raise QuitApp()
    if not choice.isdigit() or not (1 <= int(choice) <= len(statuses)):
        print_fn("Invalid choice.")
        return

    module_id = statuses[int(choice) - 1].module.id
    check = service.start_module(module_id)
    if check == START_ACTIVE:
        resume = input_fn("Module in progress. r) Resume  s) Start over: ").strip().lower()
        if resume == "s":
            check = service.start_module(module_id, restart=True)
        elif resume != "r":
            print_fn("Invalid choice.")
            return
        else:
            check = START_OK

    if check == START_AUTH_REQUIRED:
        _auth_prompt_flow(service, boundary, input_fn, print_fn)
    elif check == START_LOCKED:
        print_fn("Module is locked. Complete the previous module first.")
    elif check == START_COMPLETED:
        print_fn("Module already completed.")
    elif check == START_AWAITING_COMPLETION:
        print_fn("Finish the current module first.")
        _quiz_flow(service, boundary, input_fn, print_fn)
    elif check == START_OK:
        _quiz_flow(service, boundary, input_fn, print_fn)
    else:
        print_fn("Module not available.")


def _quiz_flow(
    service: TrainingService, boundary: LocalIdentityBoundary, input_fn: InputFn, print_fn: PrintFn
) -> None:
    """Ask the questions of the active attempt until it completes or the player leaves."""
    hidden: tuple[int, ...] = ()
    while True:
        view = service.view()
        if view.question is None:
            return
        if view.awaiting_advance:
            if not _continue(service, boundary, input_fn, print_fn):
                return
            hidden = ()
            continue

        question = view.question
        print_fn(f"\nQuestion {view.position + 1}/{view.question_count} (elapsed {view.elapsed_seconds}s)")
        print_fn(question.text)
        for idx, option in enumerate(question.options, start=1):
            if idx - 1 not in hidden:
                print_fn(f"{idx}) {option}")
        ledger = view.state.power_ups
        print_fn(
            "Power-ups: "
            + "  ".join(
                f"{key}) {POWER_UP_INFO[kind].name} ({ledger.remaining(kind)})" for key, kind in POWER_UP_KEYS.items()
            )
        )
        print_fn("Type :b to leave the module.")

        choice = input_fn("Answer: ").strip().lower()
        if choice in BACK_COMMANDS:
            print_fn("Leaving module. Progress saved.")
            return
        if choice in FLOW_EXIT_COMMANDS:
            raise QuitApp()

        if choice in POWER_UP_KEYS:
            before = list(view.state.achievements)
            outcome = service.use_power_up(POWER_UP_KEYS[choice])
            if outcome is None:
                print_fn("Power-up not available.")
                continue
            if outcome.hint is not None:
                print_fn(f"Hint: {outcome.hint}")
            if outcome.eliminated:
                hidden = outcome.eliminated
                print_fn("Two incorrect answers removed.")
            if outcome.skipped_position is not None:
                print_fn("Question skipped.")
                hidden = ()
            if outcome.module_result is not None:
                _print_new_achievements(service, before, print_fn)
                _module_complete(service, boundary, outcome.module_result, input_fn, print_fn)
                return
            continue

        if not choice.isdigit():
            print_fn("Invalid choice.")
            continue
        index = int(choice) - 1
        if index in hidden:
            print_fn("That option was eliminated.")
            continue
        before = list(view.state.achievements)
        answer = service.submit_answer(index)
        if answer is None:
            print_fn("Invalid choice.")
            continue
        if answer.correct:
            print_fn(f"Correct! +{answer.points} points")
        else:
            print_fn(f"Incorrect. Correct answer: {question.options[answer.correct_index]}")
        if answer.explanation:
            print_fn(f"Note: {answer.explanation}")
        if answer.leveled_up:
            print_fn(f"Level up! You reached level {service.view().state.level}.")
        _print_new_achievements(service, before, print_fn)


def _continue(
    service: TrainingService, boundary: LocalIdentityBoundary, input_fn: InputFn, print_fn: PrintFn
) -> bool:
    """Wait for the player, then move past the answered question."""
    lowered = input_fn("Press Enter to continue: ").strip().lower()
    if lowered in BACK_COMMANDS:
        print_fn("Leaving module. Progress saved.")
        return False
    if lowered in FLOW_EXIT_COMMANDS:
        raise QuitApp()
    before = list(service.view().state.achievements)
    result = service.advance()
    if isinstance(result, ModuleResult):
        _print_new_achievements(service, before, print_fn)
        _module_complete(service, boundary, result, input_fn, print_fn)
        return False
    return True


def _module_complete(
    service: TrainingService,
    boundary: LocalIdentityBoundary,
    result: ModuleResult,
    input_fn: InputFn,
    print_fn: PrintFn,
) -> None:
    module = service.modules[result.module_id]
    print_fn(f"\n=== {module.title} complete ===")
    print_fn(f"Module score: {result.score}")
    print_fn(f"Correct: {result.questions_correct}/{result.questions_answered}")
    if result.elapsed_seconds is not None:
        print_fn(f"Time: {result.elapsed_seconds}s")
    if result.perfect:
        print_fn("Perfect module!")
    if result.unlocked_module_id is not None:
        print_fn(f"Unlocked: {service.modules[result.unlocked_module_id].title}")
    if result.pending_auth:
        _auth_prompt_flow(service, boundary, input_fn, print_fn)


def _auth_prompt_flow(
    service: TrainingService, boundary: LocalIdentityBoundary, input_fn: InputFn, print_fn: PrintFn
) -> None:
    """Offer sign-up to a guest; declining keeps guest progress with later modules locked."""
    print_fn("\n=== Save your progress ===")
    print_fn("Sign in to keep your progress and unlock the remaining modules.")
    print_fn("1) Sign in")
    print_fn("b) Not now")
    choice = input_fn("Choose: ").strip().lower()
    if choice == "1" and _sign_in_flow(boundary, input_fn, print_fn):
        print_fn(f"Welcome, {service.identity.name if service.identity is not None else 'player'}!")
        return
    service.dismiss_auth_prompt()
    print_fn("You can sign in later from the Account menu.")


def _sign_in_flow(boundary: LocalIdentityBoundary, input_fn: InputFn, print_fn: PrintFn) -> bool:
    """Collect account details and switch the session to that account."""
    name = input_fn("Name: ").strip()
    if not name:
        print_fn("Name is required.")
        return False
    email = input_fn("Email: ").strip()
    if "@" not in email:
        print_fn("A valid email is required.")
        return False
    variant = input_fn("Achievement style (female/male, blank = default): ").strip().lower()
    boundary.sign_in(
        AuthenticatedIdentity(user_id=email.lower(), name=name, email=email, variant=variant or None)
    )
    return True


def _account_flow(
    service: TrainingService, boundary: LocalIdentityBoundary, input_fn: InputFn, print_fn: PrintFn
) -> None:
    """Show the current identity and sign in or out."""
    print_fn("\n=== Account ===")
    print_fn(_player_line(service))
    if service.is_guest:
        print_fn("1) Sign in")
    else:
        print_fn("1) Sign out")
    print_fn("b) Back")
    choice = input_fn("Choose: ").strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return
    if choice != "1":
        print_fn("Invalid choice.")
        return
    if service.is_guest:
        if _sign_in_flow(boundary, input_fn, print_fn):
            print_fn(f"Signed in as {service.identity.name if service.identity is not None else '?'}.")
        return
    service.sign_out()
    print_fn("Signed out. Playing as guest.")


def _status_flow(service: TrainingService, print_fn: PrintFn) -> None:
    """Print progression summary and module states."""
    state = service.view().state
    print_fn("\n=== Status ===")
    print_fn(_player_line(service))
    print_fn(f"- Score: {state.score}")
    print_fn(f"- Level: {state.level} ({state.xp}/{state.level * XP_PER_LEVEL} XP)")
    print_fn(f"- Streak: {state.streak} (best combo {state.max_combo})")
    print_fn(f"- Modules completed: {len(state.completed_module_ids)}/{len(service.modules)}")
    print_fn(f"- Perfect modules: {state.perfect_module_count}")
    print_fn(
        "- Power-ups: "
        + ", ".join(f"{info.name} {state.power_ups.remaining(kind)}" for kind, info in POWER_UP_INFO.items())
    )
    if state.pending_completion is not None:
        print_fn("- Sign in to unlock the next module.")


def _leaderboard_flow(service: TrainingService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Show the overall leaderboard, then any module board the player picks."""
    module_id: int | None = None
    while True:
        if module_id is None:
            print_fn("\n=== Leaderboard ===")
        else:
            module = service.modules[module_id]
            print_fn(f"\n=== Leaderboard: {module.icon} {module.title} ===")
        _print_leaderboard(service, service.leaderboard(module_id), print_fn)
        if module_id is None:
            _print_own_standing(service, print_fn)

        prompt = f"Module number (1-{len(service.modules)}) for its board, o) Overall, b) Back: "
        choice = input_fn(prompt).strip().lower()
        if choice in MENU_BACK_COMMANDS:
            return
        if choice in MENU_QUIT_COMMANDS:
            raise QuitApp()
        if choice == "o":
            module_id = None
        elif choice.isdigit() and int(choice) - 1 in service.modules:
            module_id = int(choice) - 1
        else:
            print_fn("Invalid choice.")


def _print_leaderboard(service: TrainingService, board: Leaderboard, print_fn: PrintFn) -> None:
    if not board.entries:
        print_fn("No leaderboard entries yet.")
        return
    identity = service.identity
    own_id = identity.user_id if isinstance(identity, AuthenticatedIdentity) else None
    for entry in board.entries:
        print_fn(_leaderboard_line(entry, own_id))
    own = board.user_position
    if own is not None and all(entry.user_id != own.user_id for entry in board.entries):
        print_fn("...")
        print_fn(_leaderboard_line(own, own_id))


def _print_own_standing(service: TrainingService, print_fn: PrintFn) -> None:
    if service.is_guest:
        print_fn("Sign in to appear on the leaderboard.")
        return
    rank = service.user_rank()
    print_fn(f"Your rank: #{rank}" if rank is not None else "Your rank: not ranked yet")
    for entry in service.module_performance():
        if entry.module_id is None or entry.module_id not in service.modules:
            continue
        title = service.modules[entry.module_id].title
        print_fn(f"- {title}: {entry.score}" + (" (perfect)" if entry.perfect else ""))


def _leaderboard_line(entry: LeaderboardEntry, own_id: str | None) -> str:
    line = f"{entry.rank:>3}. {entry.user_name} {entry.score}"
    if entry.perfect:
        line += " 💯"
    if entry.completion_time is not None:
        line += f" ({entry.completion_time}s)"
    if own_id is not None and entry.user_id == own_id:
        line += " <- you"
    return line


def _achievements_flow(service: TrainingService, print_fn: PrintFn) -> None:
    """Print earned and locked achievements."""
    earned = set(service.view().state.achievements)
    variant = _variant(service)
    print_fn("\n=== Achievements ===")
    for achievement in ACHIEVEMENTS:
        name, icon = display_for(achievement, variant)
        marker = icon if achievement.id in earned else "🔒"
        print_fn(f"{marker} {name}")
    print_fn(f"{len(earned)}/{len(ACHIEVEMENTS)} earned")


def _print_new_achievements(service: TrainingService, before: Sequence[int], print_fn: PrintFn) -> None:
    variant = _variant(service)
    for achievement_id in service.view().state.achievements:
        if achievement_id in before:
            continue
        name, icon = display_for(ACHIEVEMENTS_BY_ID[achievement_id], variant)
        print_fn(f"Achievement unlocked: {icon} {name}")


def _reset_flow(service: TrainingService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Reset all progress with explicit confirmation safeguard."""
    print_fn("WARNING: This permanently deletes your score, levels, achievements and module progress.")
    confirm = input_fn("Type YES to confirm reset: ").strip()
    if confirm != "YES":
        print_fn("Reset cancelled.")
        return
    service.reset()
    print_fn("Progress reset.")


def _export_progress_flow(service: TrainingService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Export current progress to a JSON file."""
    print_fn("\n=== Export Progress ===")
    path_text = input_fn("Export file path: ").strip()
    if not path_text:
        print_fn("File path is required.")
        return
    try:
        summary = service.export_progress(path_text)
    except OSError as exc:
        print_fn(f"Export failed: {exc}")
        return
    print_fn(f"Exported progress to {path_text}")
    print_fn(f"- score: {summary.score}")
    print_fn(f"- level: {summary.level}")
    print_fn(f"- completed modules: {summary.completed_modules}")


def _import_progress_flow(service: TrainingService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Replace current progress with a JSON export."""
    print_fn("\n=== Import Progress ===")
    path_text = input_fn("Import file path: ").strip()
    if not path_text:
        print_fn("File path is required.")
        return
    try:
        summary = service.import_progress(path_text)
    except (OSError, ValueError) as exc:
        print_fn(f"Import failed: {exc}")
        return
    print_fn(f"Imported progress from {path_text}")
    print_fn(f"- score: {summary.score}")
    print_fn(f"- level: {summary.level}")
    print_fn(f"- completed modules: {summary.completed_modules}")


def main_entry() -> None:
    """Console script entrypoint."""
    raise SystemExit(run())


if __name__ == "__main__":  # pragma: no cover
    main_entry()
