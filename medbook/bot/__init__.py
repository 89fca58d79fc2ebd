"""
Bot Module

Telegram transport: webhook endpoint, aiogram handlers, callback payloads,
keyboards and prompt texts.
"""
