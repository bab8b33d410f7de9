"""
Stop Selection

Per-direction flow for changing the inbound or outbound stop:

    IDLE -> MODAL_OPEN -> VALIDATING -> VALID | INVALID -> IDLE

Only a save from VALID touches the committed selection. Closing from any
phase discards the edit.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from client_state import STOP_REGIONS, AppState
from errors import ValidationFailed
from route_cache import RouteStopCache, Stop
from vehicle_feed import Direction


INVALID_STOP_MESSAGE = "Invalid stop ID. Please enter a valid stop ID."


class SelectionPhase(str, Enum):
    IDLE = "idle"
    MODAL_OPEN = "modal_open"
    VALIDATING = "validating"
    VALID = "valid"
    INVALID = "invalid"


@dataclass
class ModalView:
    input_text: str = ""
    message: str = ""
    save_enabled: bool = False


def label_stop(state: AppState, direction: Direction, stop_id: str, cache: Optional[RouteStopCache]) -> None:
    """Write the stop number and location name into the direction's stop region."""
    stop = cache.lookup(stop_id) if cache is not None else None
    name = stop.name if stop is not None else f"Stop #{stop_id}"
    state.region(STOP_REGIONS[direction]).show([name], title=f"Stop #{stop_id}")


class StopSelectionFlow:
    def __init__(
        self,
        direction: Direction,
        state: AppState,
        cache: RouteStopCache,
        on_committed: Optional[Callable[[Direction, str], None]] = None,
    ) -> None:
        self.direction = direction
        self.state = state
        self.cache = cache
        self._on_committed = on_committed
        self.phase = SelectionPhase.IDLE
        self.view = ModalView()
        self.candidate: Optional[Stop] = None

    def open(self) -> None:
        self.phase = SelectionPhase.MODAL_OPEN
        self.view = ModalView(input_text=self.state.selection.stop_id(self.direction))
        self.candidate = None

    def edit(self, text: str) -> None:
        if self.phase is SelectionPhase.IDLE:
            return
        # Any edit invalidates an earlier verdict.
        self.phase = SelectionPhase.MODAL_OPEN
        self.view.input_text = text
        self.view.message = ""
        self.view.save_enabled = False
        self.candidate = None

    def validate(self) -> SelectionPhase:
        if self.phase is SelectionPhase.IDLE:
            return self.phase
        self.phase = SelectionPhase.VALIDATING
        stop_id = self.view.input_text.strip()
        try:
            stop = self.cache.require(stop_id)
        except ValidationFailed as exc:
            print(f"[selection] {self.direction.value}: {exc}")
            self.phase = SelectionPhase.INVALID
            self.candidate = None
            self.view.message = INVALID_STOP_MESSAGE
            self.view.save_enabled = False
            return self.phase

        self.phase = SelectionPhase.VALID
        self.candidate = stop
        self.view.message = f"Valid stop: {stop.name} ({stop.line} Line)"
        self.view.save_enabled = True
        return self.phase

    def save(self) -> bool:
        """Commit the validated stop. A no-op unless the flow is VALID."""
        if self.phase is not SelectionPhase.VALID or self.candidate is None:
            return False
        stop = self.candidate
        self.state.selection.commit_stop(self.direction, stop.id)
        label_stop(self.state, self.direction, stop.id, self.cache)
        print(f"[selection] {self.direction.value} stop set to {stop.id} ({stop.name})")
        self.close()
        if self._on_committed is not None:
            self._on_committed(self.direction, stop.id)
        return True

    def close(self) -> None:
        self.phase = SelectionPhase.IDLE
        self.view = ModalView()
        self.candidate = None

    @property
    def is_open(self) -> bool:
        return self.phase is not SelectionPhase.IDLE


__all__ = ["SelectionPhase", "ModalView", "StopSelectionFlow", "label_stop", "INVALID_STOP_MESSAGE"]
