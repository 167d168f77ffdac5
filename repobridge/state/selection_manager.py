"""Revision selection state manager.

Selection is ephemeral: the latest RevHeader is forwarded to subscribers but
is not part of the repository's durable state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

from repobridge.messages import RevHeader
from repobridge.state.events import RevisionSelected, StateEvent
from repobridge.store import Store

if TYPE_CHECKING:
    from textual.app import App

    from repobridge.channel import Channel


class RevisionSelectionManager:
    """Forwards revision selections between the backend and the UI."""

    def __init__(self) -> None:
        self.selection: Store[RevHeader | None] = Store(None, name="revision_selection")
        self._channel: Channel[RevHeader] | None = None
        self._app: App | None = None
        self._emit_callback: Callable[[StateEvent, dict[str, Any]], None] | None = None

    def connect_app(self, app: App) -> None:
        self._app = app

    def set_emit_callback(
        self, callback: Callable[[StateEvent, dict[str, Any]], None]
    ) -> None:
        self._emit_callback = callback

    def attach_channel(self, channel: Channel[RevHeader]) -> None:
        """Use ``channel`` to tell the backend about UI-made selections."""
        self._channel = channel

    def on_selected(self, header: RevHeader) -> None:
        """Record a selection and notify listeners."""
        self.selection.write(header)
        if self._emit_callback:
            self._emit_callback(StateEvent.REVISION_SELECTED, {"header": header})
        if self._app is not None:
            self._app.post_message(RevisionSelected(header))

    def select(self, header: RevHeader) -> None:
        """Select a revision from the UI and publish it to the backend."""
        if self._channel is not None:
            self._channel.publish(header)
        self.on_selected(header)

    def clear(self) -> None:
        self.selection.write(None)
