"""Decision Matrix: versionierte Attribute und Geschäftsregeln.

Module:
- models: Pydantic-Modelle und Versionsnummern
- evaluator: Reine Regelauswertung
- bootstrap: Bereinigung KI-generierter Matrix-Entwürfe
- storage: SQLite-Persistenz der Versionen
- store: Aktive Version, Historie, Speichern als neue Version
"""
