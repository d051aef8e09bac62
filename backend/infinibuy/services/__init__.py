"""
Services
Infinibuy Trading Core

- market_calendar: US trading days, early closes, KST/ET conversion
- credentials: credential store protocol and per-user venue sessions
- execution_log: append-only job journal
- error_handler: error categorization, history and events
- notifier: user notification sink
- positions: stop/resume and account summaries
"""
