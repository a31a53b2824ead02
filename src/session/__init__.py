# src/session/__init__.py - v1
