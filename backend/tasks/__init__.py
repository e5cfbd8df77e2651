# tasks/__init__.py
# Background maintenance tasks
