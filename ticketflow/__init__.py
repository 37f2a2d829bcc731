"""Ticketflow - workflow transition engine for ticketing"""
