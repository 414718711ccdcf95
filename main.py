"""
StudyDesk – Command line
=========================
Agenda, practice and pomodoro from a terminal.
"""

from __future__ import annotations

import csv
import logging
import sys
import time
from pathlib import Path
from typing import Annotated, Optional

import typer

from core.errors import StudyError
from core.focus_timer import Phase
from core.practice import PracticeMode
from core.scheduler import Rating
from core.service import StudyService
from db.database import get_engine, get_session, get_session_factory, init_db
from db.models import Flashcard, FlashcardGroup, Project

app = typer.Typer(
    help="studydesk: spaced-repetition agenda, practice sessions and focus timer.",
    no_args_is_help=True,
)
log = logging.getLogger("studydesk")

UserOpt = Annotated[str, typer.Option("--user", "-u", envvar="STUDYDESK_USER", help="Acting user id.")]

_RATING_KEYS = {"1": Rating.AGAIN, "2": Rating.HARD, "3": Rating.GOOD, "4": Rating.EASY}


def _service() -> StudyService:
    init_db()
    return StudyService(get_session_factory())


def _fail(exc: Exception) -> None:
    typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


@app.callback()
def main_callback(
    verbose: Annotated[
        int, typer.Option("--verbose", "-v", count=True, help="Increase log verbosity.")
    ] = 0,
):
    """Global settings for studydesk."""
    level = logging.WARNING - 10 * min(verbose, 2)
    logging.basicConfig(level=level, format="%(levelname)s:%(name)s:%(message)s", stream=sys.stderr)


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------

@app.command("init-db")
def init_db_command():
    """Create the database tables."""
    init_db()
    typer.echo(f"Database ready: {get_engine().url}")


@app.command("import-csv")
def import_csv(
    user: UserOpt,
    title: Annotated[str, typer.Argument(help="Project title.")],
    path: Annotated[Path, typer.Argument(exists=True, dir_okay=False, help="CSV with front,back[,group].")],
):
    """Create a project from a CSV of flashcards."""
    init_db()
    s = get_session()
    try:
        project = Project(owner_user_id=user, title=title)
        s.add(project)
        s.flush()
        groups: dict[str, FlashcardGroup] = {}
        count = 0
        with open(path, newline="", encoding="utf-8") as f:
            for i, row in enumerate(csv.DictReader(f)):
                front = (row.get("front") or "").strip()
                if not front:
                    continue
                name = (row.get("group") or "General").strip() or "General"
                if name not in groups:
                    groups[name] = FlashcardGroup(
                        project_id=project.id, title=name, order_index=len(groups)
                    )
                    s.add(groups[name])
                    s.flush()
                s.add(Flashcard(
                    project_id=project.id, group_id=groups[name].id,
                    front=front, back=(row.get("back") or "").strip(), order_index=i,
                ))
                count += 1
        s.commit()
        log.info("Imported %d cards from %s into project %d", count, path, project.id)
        typer.echo(f"Project {project.id}: {count} cards in {len(groups)} groups")
    finally:
        s.close()


# ---------------------------------------------------------------------------
# Agenda
# ---------------------------------------------------------------------------

@app.command()
def agenda(
    user: UserOpt,
    project_id: int,
    days: Annotated[int, typer.Option(help="Histogram horizon in days.")] = 7,
):
    """Show due/new counts per group and the upcoming load per day."""
    svc = _service()
    try:
        groups = svc.agenda_group_counts(user, project_id)
        week = svc.agenda_due_by_day(user, project_id, days)
    except StudyError as exc:
        _fail(exc)

    typer.echo(f"{'group':<30} {'total':>5} {'new':>5} {'learn':>5} {'review':>6}  next due")
    for g in groups:
        nxt = g.next_due_at.isoformat(timespec="minutes") if g.next_due_at else "-"
        typer.echo(
            f"{g.group_title[:30]:<30} {g.total_cards:>5} {g.new_count:>5} "
            f"{g.due_learning:>5} {g.due_review:>6}  {nxt}"
        )
    typer.echo("")
    for d in week:
        bar = "#" * (d.due_learning + d.due_review)
        typer.echo(f"{d.day.isoformat()}  L{d.due_learning:>3} R{d.due_review:>4}  {bar}")


@app.command()
def history(
    user: UserOpt,
    project_id: int,
    days: Annotated[int, typer.Option(help="Days of history.")] = 30,
):
    """Show answers per day."""
    svc = _service()
    try:
        rows = svc.agenda_history(user, project_id, days)
    except StudyError as exc:
        _fail(exc)
    for r in rows:
        if r.total:
            typer.echo(
                f"{r.day.isoformat()}  total={r.total} again={r.again} "
                f"hard={r.hard} good={r.good} easy={r.easy}"
            )


# ---------------------------------------------------------------------------
# Practice
# ---------------------------------------------------------------------------

@app.command()
def review(
    user: UserOpt,
    project_id: int,
    group_id: int,
    mode: Annotated[PracticeMode, typer.Option(help="due: agenda; all: cram every card.")] = PracticeMode.DUE,
    save: Annotated[bool, typer.Option("--save/--no-save", help="Persist ratings in cram mode.")] = False,
):
    """Practice one group interactively (1=again 2=hard 3=good 4=easy, q=quit)."""
    svc = _service()
    try:
        session = svc.start_practice(user, project_id, group_id, mode=mode, persist=save)
        while (card := session.next()) is not None:
            typer.echo(f"\n[{session.remaining} left]  {card.front}")
            typer.prompt("(enter to flip)", default="", show_default=False)
            typer.echo(f"  → {card.back}")
            key = typer.prompt("rating [1-4, q]").strip().lower()
            if key == "q":
                break
            if key not in _RATING_KEYS:
                typer.echo("  ? use 1, 2, 3 or 4")
                continue
            session.rate(card.id, _RATING_KEYS[key])
        summary = session.close()
    except StudyError as exc:
        _fail(exc)

    typer.echo(f"\nReviewed {summary.reviewed} ({summary.again} again).")
    for w in summary.warnings:
        typer.secho(f"  card {w.card_id}: {w.message}", fg=typer.colors.YELLOW)


# ---------------------------------------------------------------------------
# Pomodoro
# ---------------------------------------------------------------------------

@app.command("pomodoro-settings")
def pomodoro_settings(
    user: UserOpt,
    focus: Annotated[Optional[int], typer.Option(help="Focus minutes (1-180).")] = None,
    short_break: Annotated[Optional[int], typer.Option(help="Short break minutes (1-60).")] = None,
    long_break: Annotated[Optional[int], typer.Option(help="Long break minutes (1-120).")] = None,
    cycles: Annotated[Optional[int], typer.Option(help="Focus cycles before a long break (1-12).")] = None,
    notifications: Annotated[Optional[bool], typer.Option("--notifications/--no-notifications")] = None,
    sound: Annotated[Optional[bool], typer.Option("--sound/--no-sound")] = None,
):
    """Show the pomodoro settings, updating any option given."""
    svc = _service()
    try:
        current = svc.get_pomodoro_settings(user).as_dict()
        changes = {
            "focus_minutes": focus,
            "short_break_minutes": short_break,
            "long_break_minutes": long_break,
            "cycles_before_long_break": cycles,
            "enable_notifications": notifications,
            "enable_sound": sound,
        }
        changes = {k: v for k, v in changes.items() if v is not None}
        if changes:
            current = svc.save_pomodoro_settings(user, {**current, **changes}).as_dict()
    except StudyError as exc:
        _fail(exc)
    for k, v in current.items():
        typer.echo(f"{k:<26} {v}")


@app.command()
def pomodoro(
    user: UserOpt,
    project_id: Annotated[Optional[int], typer.Option("--project", help="Tag focus time with a project.")] = None,
):
    """Run the focus timer in the terminal, picking up where any device left it (Ctrl-C to stop)."""
    svc = _service()
    try:
        timer = svc.focus_timer(user)
        if timer.phase is Phase.IDLE:
            timer.start(project_id=project_id)
        svc.sync_focus_timer(user, timer)
    except StudyError as exc:
        _fail(exc)

    def _on_phase_end(ev):
        typer.echo(
            f"\n{ev.phase.value} finished → {ev.next_phase.value}" + ("\a" if ev.sound else "")
        )
        try:
            svc.sync_focus_timer(user, timer)
        except StudyError as exc:
            log.warning("Timer state not shared: %s", exc)

    timer.add_listener(_on_phase_end)
    try:
        while timer.running:
            timer.tick()
            rem = timer.remaining_seconds()
            typer.echo(f"\r{timer.phase.value:<12} {rem // 60:02d}:{rem % 60:02d}", nl=False)
            time.sleep(1)
    except KeyboardInterrupt:
        timer.reset()
        typer.echo("\nStopped; the running interval was not logged.")
    finally:
        if not timer.flush_records():
            typer.secho(
                f"{len(timer.unsaved_records)} focus interval(s) could not be saved.",
                fg=typer.colors.YELLOW, err=True,
            )
    try:
        svc.sync_focus_timer(user, timer)
    except StudyError as exc:
        _fail(exc)


if __name__ == "__main__":
    app()
