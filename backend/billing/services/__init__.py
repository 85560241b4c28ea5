"""Billing core services: proration, cards, history, payments and lifecycle."""
