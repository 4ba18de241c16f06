"""External integrations: credentials, OAuth and Google Calendar."""
