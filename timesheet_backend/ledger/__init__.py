"""
Per-user timesheet ledgers.

One spreadsheet per user ("Timesheet - <email>") in the configured Drive folder,
with one worksheet per calendar month (January..December). Rows are append-only:
`[Date, Project, Task, Hours]`.
"""
