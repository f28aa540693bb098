"""Logging für den Decision Core.

Alle Komponenten loggen unter dem gemeinsamen Präfix `catalai`:

    catalai.app            Service-Fassade, Start/Stop, Health
    catalai.clarification  Zustandswechsel des Rückfrage-Dialogs
    catalai.classifier     Pipeline-Schritte pro Fall
    catalai.matrix         Regelauswertung, Versionswechsel, Bootstrap
    catalai.llm            LLM-Aufrufe und Retries
    catalai.learning       Analysen, Vorschläge, Validierungsläufe
    catalai.db             Datenbank (Module unter catalai.db.*)

Ausgabe nach stdout und optional in eine rotierende Datei im
Log-Verzeichnis.  Eine Zeile pro Ereignis mit Zeitstempel, Level,
Logger-Name und Nachricht; Fall-, Versions- und Vorschlags-IDs stehen
in der Nachricht.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

ROOT_LOGGER_NAME = "catalai"

COMPONENTS = frozenset(
    {"app", "clarification", "classifier", "matrix", "llm", "learning", "db"}
)

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_NAME = "decision_core.log"

# 5 MB pro Datei, 3 Backups
MAX_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 3

# Bibliotheken, die auf INFO zu gesprächig sind
QUIET_LOGGERS = ("anthropic", "httpx", "httpcore", "aiosqlite")


def setup_logging(
    log_level: str = "INFO",
    log_dir: Path | None = None,
    log_file_name: str = LOG_FILE_NAME,
) -> None:
    """Richtet die Handler am catalai-Logger ein.

    Mehrfacher Aufruf ersetzt die Handler (z.B. pro Service-Instanz in
    Tests), statt sie zu verdoppeln.

    Args:
        log_level: DEBUG, INFO, WARNING oder ERROR; unbekannt → INFO.
        log_dir: Verzeichnis für die Log-Datei, None = nur stdout.
        log_file_name: Dateiname innerhalb von log_dir.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    root.addHandler(_console_handler(level, formatter))

    file_problem: OSError | None = None
    if log_dir is not None:
        try:
            root.addHandler(_file_handler(log_dir / log_file_name, level, formatter))
        except OSError as exc:
            file_problem = exc

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if file_problem is not None:
        root.warning("Log-Datei nicht nutzbar (%s), es wird nur nach stdout geloggt", file_problem)


def _console_handler(level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _file_handler(path: Path, level: int, formatter: logging.Formatter) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def get_logger(component: str) -> logging.Logger:
    """Logger `catalai.<component>`.

    Raises:
        ValueError: Komponente ist nicht in COMPONENTS.
    """
    if component not in COMPONENTS:
        raise ValueError(
            f"Unbekannte Log-Komponente '{component}', "
            f"erlaubt: {', '.join(sorted(COMPONENTS))}"
        )
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}")
