from .db import (
    Base,
    Topic,
    Message,
    Reminder,
    Summary,
    create_all,
    dispose_engine,
    insert_topic,
    get_topic,
    list_auto_summary_topics,
    insert_message,
    fetch_messages,
    fetch_recent_messages,
    insert_reminder,
    get_reminder,
    update_reminder,
    mark_reminder_failed,
    list_reminders,
    fetch_overdue_reminders,
    get_summary,
    insert_summary,
    count_summaries,
)  # noqa: F401
