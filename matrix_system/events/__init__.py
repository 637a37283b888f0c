# matrix_system/events/__init__.py
from matrix_system.events.event_bus import eventBus, EventBus, MatrixEvents

__all__ = ['eventBus', 'EventBus', 'MatrixEvents']
