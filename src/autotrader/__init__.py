"""Automated spot trading: trade validation, order dispatch and position supervision."""
