"""taskrelay: request/task lifecycle orchestration for small automated teams."""

__version__ = "0.1.0"
