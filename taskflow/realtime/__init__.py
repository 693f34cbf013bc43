from .events import EventRouter, user_topic, project_topic, channel_topic, parse_topic
from .presence import PresenceTracker, PresenceState
