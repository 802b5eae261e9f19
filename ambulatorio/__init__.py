"""
Backend Ambulatorio: coda walk-in per medico e prenotazione appuntamenti.

Struttura:
- config.py              : configurazione da variabili d'ambiente / .env
- db.py                  : engine e sessioni SQLAlchemy
- models.py              : modelli ORM, enum e macchina a stati del ticket
- errors.py              : errori di dominio (codice + stato HTTP)
- queue_service.py       : coda FIFO (join, chiama prossimo, completa, annulla)
- appointment_service.py : appuntamenti (orario di lavoro, sovrapposizioni, finestra di modifica)
- notifications.py       : notifiche best-effort (outbox o mock)
- auth_security.py       : token JWT -> identità e ruolo
- api_main.py            : API REST (FastAPI)
- cli.py                 : simulazione applicativi esterni via CLI
"""
