"""
Persistence

TimescaleDB/PostgreSQL storage for trades and imbalance bars.
"""
