from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical, VerticalScroll
from textual.screen import ModalScreen, Screen
from textual.widgets import DataTable, Footer, Header, Static

from mergegate.config import AppConfig
from mergegate.remediation import DriftReport, DriftReportEntry, generate_drift_report
from mergegate.state import StateStore


_DETAIL_MAX_CHARS = 48


class _RemediationModal(ModalScreen[None]):
    BINDINGS = [
        Binding("escape", "close", "Close"),
        Binding("enter", "close", "Close"),
        Binding("q", "close", "Close"),
    ]
    CSS = """
    #remediation-dialog {
        width: 90%;
        height: 70%;
        border: round $accent;
        background: $surface;
        padding: 1 2;
    }
    #remediation-title {
        text-style: bold;
        margin-bottom: 1;
    }
    #remediation-body-scroll {
        height: 1fr;
        border: round $boost;
        padding: 0 1;
    }
    """

    def __init__(self, *, title: str, body: str) -> None:
        super().__init__()
        self._title = title
        self._body = body

    def compose(self) -> ComposeResult:
        with Vertical(id="remediation-dialog"):
            yield Static(self._title, id="remediation-title")
            with VerticalScroll(id="remediation-body-scroll"):
                yield Static(self._body, id="remediation-body")
            yield Static("Press Esc, Enter, or q to close.", id="remediation-hint")

    def action_close(self) -> None:
        self.dismiss(None)


class _DriftDataTable(DataTable):
    """Enter on a row opens its remediation text."""

    def action_select_cursor(self) -> None:
        app = self.app
        if isinstance(app, GateDashboardApp):
            app.action_show_detail()


class GateDashboardApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("tab", "cycle_focus", "Focus"),
        Binding("enter", "show_detail", "Remediation"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        store: StateStore,
        config: AppConfig,
        refresh_seconds: float = 5.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__()
        self._store = store
        self._config = config
        self._refresh_seconds = refresh_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._report: DriftReport | None = None

    @property
    def report(self) -> DriftReport | None:
        return self._report

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Validating Tasks", classes="panel-title")
            yield _DriftDataTable(id="validating-table")
            yield Static("Orphan PRs", classes="panel-title")
            yield _DriftDataTable(id="orphan-table")
        yield Footer()

    def on_mount(self) -> None:
        columns = ("Task", "Title", "Reviewer", "PR", "Age", "Issue", "Detail")
        self._base_table("#validating-table").add_columns(*columns)
        self._base_table("#orphan-table").add_columns(*columns)
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_focus(self) -> None:
        self.screen.focus_next()

    def action_show_detail(self) -> None:
        entry = self._selected_entry()
        if entry is None or not self.is_running:
            return
        body = entry.remediation or "No remediation needed."
        self.push_screen(
            _RemediationModal(
                title=f"{entry.task_id} [{entry.issue}]",
                body=f"{entry.detail}\n\n{body}",
            )
        )

    def refresh_data(self) -> None:
        self._report = generate_drift_report(
            self._store.list_tasks(), now=self._clock(), config=self._config.drift
        )
        summary = self._report.summary
        self._base_static("#summary").update(
            " | ".join(f"{key.replace('_', ' ')}: {value}" for key, value in summary.items())
        )
        _fill_table(self._base_table("#validating-table"), self._report.validating)
        _fill_table(self._base_table("#orphan-table"), self._report.orphan_prs)

    def _selected_entry(self) -> DriftReportEntry | None:
        focused = self.focused
        if self._report is None or not isinstance(focused, DataTable):
            return None
        if focused.id == "validating-table":
            rows = self._report.validating
        elif focused.id == "orphan-table":
            rows = self._report.orphan_prs
        else:
            return None
        if focused.row_count == 0 or not 0 <= focused.cursor_row < len(rows):
            return None
        return rows[focused.cursor_row]

    def _base_screen(self) -> Screen[Any]:
        if self.screen_stack:
            return self.screen_stack[0]
        return self.screen

    def _base_table(self, selector: str) -> DataTable:
        return self._base_screen().query_one(selector, DataTable)

    def _base_static(self, selector: str) -> Static:
        return self._base_screen().query_one(selector, Static)


def run_dashboard(*, store: StateStore, config: AppConfig, refresh_seconds: float = 5.0) -> None:
    GateDashboardApp(store=store, config=config, refresh_seconds=refresh_seconds).run()


def _fill_table(table: DataTable, entries: tuple[DriftReportEntry, ...]) -> None:
    previous_row = table.cursor_row if table.row_count > 0 else 0
    table.clear(columns=False)
    for entry in entries:
        issue = f"{entry.issue} (critical)" if entry.critical else entry.issue
        table.add_row(
            entry.task_id,
            entry.title,
            entry.reviewer or "-",
            entry.pr_url or "-",
            f"{entry.age_minutes}m",
            issue,
            _truncate(entry.detail, max_chars=_DETAIL_MAX_CHARS),
        )
    if table.row_count > 0:
        table.move_cursor(row=min(previous_row, table.row_count - 1), animate=False)


def _truncate(text: str, *, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."
