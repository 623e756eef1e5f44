"""Tool confirmation modal: asks the user to accept or reject a tool call.

Returns one of:
- accept: run this call only.
- accept_session: run it and remember the approval for this conversation.
- accept_global: run it and remember the approval everywhere.
- allow_server_session / allow_server_global: MCP calls only; approve
  every tool of the server instead of this one tool.
- reject: do not run it.
"""
from __future__ import annotations

from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Label, Static

# Map button IDs to result strings
_RESULT_MAP = {
    "btn-accept": "accept",
    "btn-session": "accept_session",
    "btn-global": "accept_global",
    "btn-server-session": "allow_server_session",
    "btn-server-global": "allow_server_global",
    "btn-reject": "reject",
}

_CATEGORY_HEADINGS = {
    "mcp": "MCP tool call",
    "sensitive_file": "Sensitive file edit",
    "terminal": "Terminal command",
    "tool": "Tool call",
}


def _escape(text: str) -> str:
    return text.replace("[", "\\[")


class ToolConfirmationScreen(ModalScreen[str]):
    """Modal dialog for one parked tool call."""

    BINDINGS = [
        ("escape", "reject", "Reject"),
        ("a", "select('accept')", "Accept"),
        ("s", "select('accept_session')", "Always (conversation)"),
        ("g", "select('accept_global')", "Always (everywhere)"),
        ("r", "reject", "Reject"),
    ]

    # Ignore input for a moment after mounting so a keypress meant for the
    # previous screen does not answer the dialog.
    _MOUNT_GUARD_SECONDS = 0.3

    CSS = """
    ToolConfirmationScreen {
        align: center middle;
    }
    ToolConfirmationScreen > Vertical {
        width: 90;
        height: auto;
        max-height: 30;
        background: $surface;
        border: thick $warning;
        padding: 1 2;
    }
    ToolConfirmationScreen .info-text {
        width: 100%;
        margin-bottom: 1;
    }
    ToolConfirmationScreen #confirmation-command {
        background: $panel;
        padding: 0 1;
        margin-bottom: 1;
    }
    ToolConfirmationScreen Horizontal {
        height: auto;
    }
    """

    def __init__(
        self,
        tool_name: str,
        title: str = "",
        message: str = "",
        command: str = "",
        category: str = "tool",
        mcp_server: str | None = None,
        file_key: str | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.tool_name = tool_name
        self.title_text = title
        self.message = message
        self.command = command
        self.category = category
        self.mcp_server = mcp_server
        self.file_key = file_key

    @property
    def can_remember(self) -> bool:
        """Whether "always" answers make sense for this call."""
        return self.category in ("mcp", "sensitive_file", "terminal")

    def compose(self) -> ComposeResult:
        heading = _CATEGORY_HEADINGS.get(self.category, "Tool call")
        with Vertical(id="confirmation-dialog"):
            yield Label(f"[bold $warning]{heading} needs confirmation[/bold $warning]")
            yield Static(
                _escape(self.title_text)
                if self.title_text
                else f"Run [cyan]{_escape(self.tool_name)}[/cyan]?",
                classes="info-text",
            )
            if self.message:
                yield Static(_escape(self.message[:500]), classes="info-text")
            if self.command:
                yield Static(_escape(self.command[:500]), id="confirmation-command")
            with Horizontal(id="confirmation-buttons"):
                yield Button("[a] Accept", variant="success", id="btn-accept")
                if self.can_remember:
                    yield Button("[s] Always (conversation)", variant="warning", id="btn-session")
                    yield Button("[g] Always (everywhere)", variant="warning", id="btn-global")
                yield Button("[r] Reject", variant="error", id="btn-reject")
            if self.category == "mcp" and self.mcp_server:
                with Horizontal(id="confirmation-server-buttons"):
                    yield Button(
                        f"Allow all {self.mcp_server} tools (conversation)",
                        id="btn-server-session",
                    )
                    yield Button(
                        f"Allow all {self.mcp_server} tools (everywhere)",
                        id="btn-server-global",
                    )

    def on_mount(self) -> None:
        import time

        self._mount_time = time.monotonic()
        try:
            self.query_one("#btn-accept", Button).focus()
        except Exception:
            pass

    def _is_guarded(self) -> bool:
        import time

        elapsed = time.monotonic() - getattr(self, "_mount_time", 0)
        return elapsed < self._MOUNT_GUARD_SECONDS

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if self._is_guarded():
            return
        self.dismiss(_RESULT_MAP.get(event.button.id, "reject"))

    def action_select(self, decision: str) -> None:
        if self._is_guarded():
            return
        if decision in ("accept_session", "accept_global") and not self.can_remember:
            return
        self.dismiss(decision)

    def action_reject(self) -> None:
        if self._is_guarded():
            return
        self.dismiss("reject")
