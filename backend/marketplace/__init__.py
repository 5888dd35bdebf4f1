"""Marketplace backend: buyers, sellers, delivery agents, pickup sites and admin payout approvals."""

__version__ = "0.1.0"
