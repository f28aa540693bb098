"""CatalAI Decision Core.

Ergänzt einen LLM-Klassifizierer um eine deterministische Regelschicht
(Decision Matrix), einen begrenzten Rückfrage-Dialog und einen
Lernkreislauf, der aus Nutzer-Feedback Regeländerungen vorschlägt.
"""

__version__ = "0.1.0"
