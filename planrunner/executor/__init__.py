"""Prompt execution: dependency gate, step dispatcher, tracker and executor."""
