"""
Timesheet ledger sync.

Per-user, month-partitioned timesheet ledgers (Google Sheets in a shared Drive
folder) plus a daily reconciliation sweep that reports missing or incomplete
days to Slack.
"""
