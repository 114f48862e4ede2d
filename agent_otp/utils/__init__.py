"""Shared helpers: conditions, cache, crypto, logging, time and webhooks"""
