from visa_slot_bot.bot import NOTIFY_STATES, format_notification, greeting_text
from visa_slot_bot.config import load_settings
from visa_slot_bot.models import WatchEvent


def test_captcha_status_is_forwarded() -> None:
    event = WatchEvent(kind="status", state="WAITING_CAPTCHA", message="Credentials filled; <waiting>")
    text = format_notification(event)
    assert text is not None
    assert text.startswith(NOTIFY_STATES["WAITING_CAPTCHA"])
    assert "&lt;waiting&gt;" in text


def test_routine_events_are_not_forwarded() -> None:
    assert format_notification(WatchEvent(kind="status", state="ATTEMPT", message="Attempt 2/1800")) is None
    assert format_notification(WatchEvent(kind="log", level="error", message="boom")) is None


def test_greeting_escapes_pickup_point() -> None:
    settings = load_settings(
        {
            "VISA_USER_EMAIL": "user@example.com",
            "VISA_USER_PASSWORD": "secret-pass",
            "VISA_USER_DISPLAY_NAME": "Kofi Mensah",
            "VISA_PICKUP_POINT": "Accra <Airport> & Ridge",
        }
    )
    text = greeting_text(settings)
    assert "<b>Accra &lt;Airport&gt; &amp; Ridge</b>" in text
    assert "<Airport>" not in text
