"""Reminder delivery service module (API, scheduler, dispatcher, SMTP transport).

Due reminders are picked up on a fixed cadence and delivered as one
multipart email each, over an SMTP client that speaks the wire protocol
directly on an asyncio stream.
"""
