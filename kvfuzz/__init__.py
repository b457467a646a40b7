"""
kvfuzz: randomized consistency testing for transactional key-value stores

Drives concurrent read-modify-write transactions against a transactional
backend and verifies that every logical set of keys still sums to the
same total.
"""

__version__ = "0.1.0"
