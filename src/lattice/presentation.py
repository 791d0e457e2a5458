"""Render-time display rules for examiner results."""

from __future__ import annotations

from lattice import colors
from lattice.app_examiner import AppInfo, InstanceInfo
from lattice.receptor import ActualLRPState

STATE_COLORS: dict[ActualLRPState, str] = {
    ActualLRPState.RUNNING: "green",
    ActualLRPState.CLAIMED: "yellow",
    ActualLRPState.UNCLAIMED: "cyan",
    ActualLRPState.INVALID: "red",
}


def state_color(state: ActualLRPState) -> str | None:
    """Display color name for an instance state, None for no color."""
    return STATE_COLORS.get(state)


def color_instance_state(instance: InstanceInfo) -> str:
    """Instance state label, colored. Placement failures show in red."""
    label = instance.state.value
    if instance.state == ActualLRPState.UNCLAIMED and instance.placement_error:
        return colors.red(label)
    return colors.style(state_color(instance.state), label)


def color_instances(app: AppInfo) -> str:
    """``running/desired``: green when equal, red when none run, else yellow."""
    text = f"{app.actual_running_instances}/{app.desired_instances}"
    if app.actual_running_instances == app.desired_instances:
        return colors.green(text)
    if app.actual_running_instances == 0:
        return colors.red(text)
    return colors.yellow(text)
