"""
Reminder Mailer Backend Application Package

Scheduled reminder notifications delivered over a hand-written SMTP client.
"""
