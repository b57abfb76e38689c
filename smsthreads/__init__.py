"""Thread-structured local cache of a Twilio message log."""
