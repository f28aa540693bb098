"""Rückfrage-Dialog: begrenzter Frage/Antwort-Zyklus bis zur Klassifizierung.

Module:
- models: Dialogzustand (ClarificationSession) und Fragen
- controller: Zustandsautomat mit Fragenplan und Loop-Guard
- loop_detection: Wiederholungs-, Duplikat- und "weiß nicht"-Erkennung
"""
