"""Tone Drafter - tonbewusste Antwort-Entwürfe für verbundene Postfächer"""

__version__ = "0.1.0"
