"""Speed reader: Readwise Reader library mirror for RSVP reading."""
