from __future__ import annotations

from subtrack.utils.types import Alert, Toast

def plural_days(n: int) -> str:
    return f"{n} day{'' if n == 1 else 's'}"

def money(amount: float, symbol: str = "₹") -> str:
    return f"{symbol}{amount:.2f}"

def renewal_phrase(days_to_renewal: int, is_past_due: bool) -> str:
    """'in 3 days' / 'Renewal due today' fragment used in titles and toasts."""
    if is_past_due:
        return "Renewal due today"
    return f"in {plural_days(days_to_renewal)}"

def format_toast(toast: Toast) -> str:
    return f"🔔 {toast.title}\n{toast.body}"

def format_alert_line(alert: Alert) -> str:
    """One-line console rendering of an alert."""
    flag = "!" if alert.urgent else " "
    ts = alert.created_at.strftime("%Y-%m-%d %H:%M")
    line = f"[{flag}] {ts} {alert.kind:<15} {alert.title} | {alert.message}"
    if alert.action_label:
        line += f" ({alert.action_label})"
    return line
