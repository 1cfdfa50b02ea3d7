"""Provider REST adapters (Twilio, Telnyx, Plivo)."""
