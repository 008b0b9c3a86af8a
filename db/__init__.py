from .db import (
    Base,
    Reminder,
    ReminderInteraction,
    ReminderPreference,
    ReminderAnalytics,
    PushSubscription,
    Account,
    Assignment,
    DEFAULT_COMPLETION_LEAD_HOURS,
    DEFAULT_PREFERRED_HOUR,
    UTC,
    utcnow,
    as_utc,
    get_engine,
    get_session,
    session_scope,
    create_all,
    dispose_engine,
    upsert_live_reminder,
    get_or_create_preference,
    update_preference,
    read_preference,
    read_analytics,
    list_live_reminders,
    list_reminder_history,
    get_reminder,
    upsert_push_subscription,
    delete_push_subscription,
    list_push_subscriptions,
    dismiss_where,
)  # noqa: F401
