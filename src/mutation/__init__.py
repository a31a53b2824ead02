# src/mutation/__init__.py - v1
