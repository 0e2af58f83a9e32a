"""Scheduled jobs triggered by the external cron."""
