"""Lernkreislauf: Feedback-Analyse und Regelvorschläge.

Module:
- models: Analysen, Vorschläge, Validierungsläufe
- analyzer: Zustimmungsquoten, Fehlklassifizierungs-Cluster, Muster
- suggestions: Status-Workflow und Übernahme in neue Matrix-Versionen
- trigger: Automatische Auslösung bei sinkender Zustimmungsquote
- validation: Regel-Re-Evaluation über eine Stichprobe
- storage: CRUD in SQLite
"""
