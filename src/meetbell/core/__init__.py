"""Infrastructure shared by the meetbell components: storage, timers, retry, logging."""
