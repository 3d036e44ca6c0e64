"""Booking lifecycle and payment orchestration for a coaching marketplace."""
