"""Quran knowledge quizzes for Discord: chapter, verse order, missing words and translation."""

__version__ = "1.0.0"
