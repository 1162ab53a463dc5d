"""Power mode state machine driven by the host application lifecycle.

PowerModeController holds exactly one active PowerMode and a ModeConfig
template per mode. Transitions come from two places:

1. **Host lifecycle**: "active" selects normal, "inactive" selects low and
   anything else (e.g. "background") selects background.
2. **Manual override**: set_power_mode() with a mode or its name.

On every real transition the target template is cloned once and the clone is
passed to every listener in subscription order. Each listener call runs
inside its own try/except so one failing listener never prevents the others
from hearing about the change, and never reaches the caller.

Notification is synchronous and not re-entrant with mode mutation, so no
locking is needed beyond the ordered listener list.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional, Union

from .models import ModeConfig, PowerMode, default_mode_configs
from .sources import Subscription

logger = logging.getLogger(__name__)

PowerModeListener = Callable[[PowerMode, ModeConfig], None]
AppStateListener = Callable[[str], None]

APP_STATE_ACTIVE = "active"
APP_STATE_INACTIVE = "inactive"
APP_STATE_BACKGROUND = "background"


def mode_for_app_state(app_state: str) -> PowerMode:
    """Map a host lifecycle state to the power mode it implies."""
    if app_state == APP_STATE_ACTIVE:
        return PowerMode.NORMAL
    if app_state == APP_STATE_INACTIVE:
        return PowerMode.LOW
    return PowerMode.BACKGROUND


def _parse_mode(mode: Union[PowerMode, str, None]) -> Optional[PowerMode]:
    if isinstance(mode, PowerMode):
        return mode
    try:
        return PowerMode(mode)
    except ValueError:
        return None


class AppLifecycle(ABC):
    """Host application lifecycle signal."""

    @property
    @abstractmethod
    def current_state(self) -> str:
        """The lifecycle state at the time of the call."""

    @abstractmethod
    def add_listener(self, listener: AppStateListener) -> Subscription:
        """Deliver every future state change to listener."""


class SimpleLifecycle(AppLifecycle):
    """In-process lifecycle signal; the host calls emit() on every change."""

    def __init__(self, initial_state: str = APP_STATE_ACTIVE) -> None:
        self._state = initial_state
        self._listeners: list[AppStateListener] = []

    @property
    def current_state(self) -> str:
        return self._state

    def add_listener(self, listener: AppStateListener) -> Subscription:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription(remove, name="app-lifecycle")

    def emit(self, state: str) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Error in app state listener")


class PowerModeController:
    """Selects the operating profile and tells subscribers about it.

    The controller starts in normal mode. Create one per process and hand it
    to whoever needs it; call initialize() to follow a host lifecycle and
    cleanup() to stop following it.

    Args:
        mode_configs: Templates per mode. Defaults to the built-in profiles.
            The controller keeps its own copies.
    """

    def __init__(self, mode_configs: Optional[Mapping[PowerMode, ModeConfig]] = None) -> None:
        templates = mode_configs or default_mode_configs()
        self._templates: dict[PowerMode, ModeConfig] = {
            PowerMode(mode): config.clone() for mode, config in templates.items()
        }
        missing = [mode.value for mode in PowerMode if mode not in self._templates]
        if missing:
            raise ValueError(f"Missing mode configs: {', '.join(missing)}")

        self._mode = PowerMode.NORMAL
        self._listeners: list[PowerModeListener] = []
        self._app_state: Optional[str] = None
        self._lifecycle_subscription: Optional[Subscription] = None

        logger.info("PowerModeController initialized")

    # ------------------------------------------------------------------
    # Host lifecycle
    # ------------------------------------------------------------------

    def initialize(self, lifecycle: AppLifecycle) -> "PowerModeController":
        """Follow lifecycle changes and apply the current lifecycle state."""
        self.cleanup()
        self._lifecycle_subscription = lifecycle.add_listener(self.handle_app_state_change)
        self._app_state = lifecycle.current_state
        self.set_power_mode(mode_for_app_state(self._app_state))
        logger.info("PowerModeController following app state: %s", self._app_state)
        return self

    def cleanup(self) -> None:
        """Stop following the host lifecycle. Idempotent."""
        subscription, self._lifecycle_subscription = self._lifecycle_subscription, None
        if subscription is not None:
            subscription.remove()

    def handle_app_state_change(self, next_app_state: str) -> ModeConfig:
        logger.info("App state changed: %s -> %s", self._app_state, next_app_state)
        self._app_state = next_app_state
        return self.set_power_mode(mode_for_app_state(next_app_state))

    @property
    def app_state(self) -> Optional[str]:
        return self._app_state

    # ------------------------------------------------------------------
    # Mode selection
    # ------------------------------------------------------------------

    @property
    def current_mode(self) -> PowerMode:
        return self._mode

    @property
    def current_config(self) -> ModeConfig:
        return self._templates[self._mode].clone()

    def config_for_mode(self, mode: Union[PowerMode, str]) -> ModeConfig:
        """Copy of the template for mode; unknown modes fall back to normal."""
        parsed = _parse_mode(mode) or PowerMode.NORMAL
        return self._templates[parsed].clone()

    def set_power_mode(self, mode: Union[PowerMode, str]) -> ModeConfig:
        """Switch to mode and notify listeners if it differs from the current one.

        Args:
            mode: Target PowerMode or its name.

        Returns:
            Copy of the config now in effect. For an invalid mode this is
            the unchanged current config.
        """
        target = _parse_mode(mode)
        if target is None:
            logger.error("Invalid power mode: %r", mode)
            return self.current_config

        if target is self._mode:
            return self.current_config

        previous = self._mode
        config = self._templates[target].clone()
        self._mode = target
        self._notify_listeners(target, config)

        logger.info("Power mode changed: %s -> %s", previous.value, target.value)
        return config.clone()

    def update_mode_config(
        self, mode: Union[PowerMode, str], partial: Optional[Mapping[str, Any]] = None, **fields: Any
    ) -> Optional[ModeConfig]:
        """Shallow-merge fields into the stored template for mode.

        Updating the active mode triggers one notification round with the
        merged config; other modes pick up the change when next entered.

        Returns:
            Copy of the merged template, or None for an invalid mode.

        Raises:
            ValueError: If a field name is not part of ModeConfig.
        """
        target = _parse_mode(mode)
        if target is None:
            logger.error("Invalid power mode: %r", mode)
            return None

        updates = dict(partial or {})
        updates.update(fields)
        self._templates[target] = self._templates[target].merged(updates)
        logger.info("Updated configuration for %s mode: %s", target.value, self._templates[target])

        if target is self._mode:
            self._notify_listeners(target, self._templates[target].clone())

        return self._templates[target].clone()

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: PowerModeListener) -> bool:
        """Register listener and call it right away with the current state.

        Duplicate registrations are kept; such a listener is called once per
        registration.
        """
        if not callable(listener):
            logger.error("Power mode listener must be callable, got %r", listener)
            return False

        self._listeners.append(listener)
        try:
            listener(self._mode, self.current_config)
        except Exception:
            logger.exception("Error in power mode listener (initial notification)")
        return True

    def unsubscribe(self, listener: PowerModeListener) -> bool:
        """Remove the first registration of listener. Returns whether one was found."""
        try:
            self._listeners.remove(listener)
        except ValueError:
            return False
        return True

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _notify_listeners(self, mode: PowerMode, config: ModeConfig) -> None:
        for listener in list(self._listeners):
            try:
                listener(mode, config.clone())
            except Exception:
                logger.exception("Error in power mode listener")

    def __repr__(self) -> str:
        return f"<PowerModeController(mode={self._mode.value}, listeners={len(self._listeners)})>"
