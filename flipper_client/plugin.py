"""
Plugin capability contract.

A plugin is any object exposing an ``id``, a ``run_in_background`` flag and the
two lifecycle callbacks below. No base class is needed; the client only relies
on this structural shape.
"""

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from flipper_client.connection import FlipperConnection


@runtime_checkable
class FlipperPlugin(Protocol):
    id: str
    run_in_background: bool

    def did_connect(self, connection: "FlipperConnection") -> None:
        """
        Called when the host activates the plugin.

        The plugin registers its method handlers on ``connection`` here and may
        keep the connection around to push events with ``connection.send``.
        """
        ...

    def did_disconnect(self) -> None:
        """Called when the plugin is deactivated or the session is closed."""
        ...
