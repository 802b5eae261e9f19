from __future__ import annotations

import base64
import json
import os
from datetime import date, datetime, timezone

import requests
import streamlit as st

st.set_page_config(page_title="Ambulatorio", layout="wide")

API_BASE = os.getenv("API_BASE", "http://127.0.0.1:8000")



# JWT helpers (solo per UI, senza verifica firma)

def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def jwt_payload(token: str) -> dict:
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return {}
        payload = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
        return payload if isinstance(payload, dict) else {}
    except (ValueError, UnicodeDecodeError):
        return {}


def jwt_is_expired(token: str) -> bool:
    exp = jwt_payload(token).get("exp")
    try:
        exp_int = int(exp)
    except (TypeError, ValueError):
        return False

    now = int(datetime.now(tz=timezone.utc).timestamp())
    return now >= (exp_int - 5)



# HTTP client (con JWT)
# L'API risponde sempre con { ok, messaggio, dati | codice }: gli errori di dominio
# arrivano come JSON anche con status 4xx, quindi non si usa raise_for_status.

def _call(method: str, path: str, token: str, payload: dict | None = None, params: dict | None = None) -> dict:
    headers = {"Authorization": f"Bearer {token}"}
    r = requests.request(method, f"{API_BASE}{path}", headers=headers, json=payload, params=params, timeout=10)

    if r.status_code == 401:
        raise PermissionError("401 Unauthorized (token non valido o scaduto).")

    try:
        return r.json()
    except ValueError:
        r.raise_for_status()
        raise


def show_result(res: dict) -> None:
    if res.get("ok"):
        st.success(res.get("messaggio") or "OK")
    else:
        st.error(f"{res.get('messaggio') or 'Errore'} ({res.get('codice', '-')})")


def fmt_ticket(t: dict) -> str:
    pos = f"#{t['position']} " if t.get("position") else ""
    return f"{pos}ticket {t['id']} | paziente {t['patientId']} | {t['status']} | dal {t['createdAt'][11:16]}"


def require_token() -> str | None:
    token = st.session_state.get("token")
    if not token:
        st.warning("Inserisci un token nella sidebar (es. `python -m ambulatorio.cli token --user-id 7 --role MEDICO`).")
        return None
    if jwt_is_expired(token):
        st.error("Token scaduto. Generane uno nuovo.")
        return None
    return token



# Sidebar token

with st.sidebar:
    st.header("Accesso")
    raw = st.text_input("Bearer token", value=st.session_state.get("token", ""), type="password", key="tok_in")
    if raw.strip():
        st.session_state["token"] = raw.strip()
        p = jwt_payload(raw.strip())
        st.write(f"Utente: **{p.get('sub', '?')}** | Ruolo: **{p.get('role', '?')}**")
    else:
        st.session_state.pop("token", None)

    st.divider()
    st.caption(f"API: {API_BASE}")



# UI

st.title("Ambulatorio: coda walk-in e appuntamenti")

tab1, tab2, tab3 = st.tabs(["Coda", "Appuntamenti", "Notifiche"])



# TAB 1 - Coda

with tab1:
    token = require_token()
    if token:
        doctor_id = st.number_input("ID medico", min_value=1, step=1, value=1, key="q_doctor")

        c1, c2, c3 = st.columns(3)
        with c1:
            st.subheader("Ingresso in coda")
            patient_id = st.number_input("ID paziente", min_value=1, step=1, value=1, key="q_patient")
            if st.button("Metti in coda", key="q_join"):
                try:
                    res = _call("POST", "/api/queue/join", token, {"doctorId": doctor_id, "patientId": patient_id})
                    show_result(res)
                    if res.get("ok"):
                        st.write(f"Posizione: **{res['dati']['position']}**")
                except Exception as e:
                    st.error(str(e))

        with c2:
            st.subheader("Ambulatorio")
            if st.button("Chiama il prossimo", key="q_next"):
                try:
                    res = _call("POST", "/api/queue/call-next", token, {"doctorId": doctor_id})
                    show_result(res)
                    if res.get("dati"):
                        st.write(fmt_ticket(res["dati"]))
                except Exception as e:
                    st.error(str(e))

        with c3:
            st.subheader("Ticket")
            ticket_id = st.number_input("ID ticket", min_value=1, step=1, value=1, key="q_ticket")
            if st.button("Completa", key="q_complete"):
                try:
                    show_result(_call("PUT", f"/api/queue/ticket/{ticket_id}/complete", token))
                except Exception as e:
                    st.error(str(e))
            if st.button("Annulla", key="q_cancel"):
                try:
                    show_result(_call("PATCH", f"/api/queue/ticket/{ticket_id}/cancel", token))
                except Exception as e:
                    st.error(str(e))

        st.divider()
        st.subheader("In visita / in attesa")
        try:
            current = _call("GET", f"/api/queue/doctor/{doctor_id}/current", token)
            if current.get("dati"):
                st.info(f"In visita: {fmt_ticket(current['dati'])}")
            waiting = _call("GET", f"/api/queue/doctor/{doctor_id}/waiting", token)
            if not waiting.get("ok"):
                show_result(waiting)
            elif not waiting["dati"]:
                st.info("Nessun paziente in attesa.")
            else:
                for t in waiting["dati"]:
                    st.write(f"- {fmt_ticket(t)}")
        except Exception as e:
            st.error(f"Errore coda: {e}")



# TAB 2 - Appuntamenti

with tab2:
    token = require_token()
    if token:
        with st.expander("Prenota appuntamento", expanded=True):
            colA, colB = st.columns(2)
            with colA:
                user_id = st.number_input("ID paziente", min_value=1, step=1, value=1, key="a_user")
                a_doctor = st.number_input("ID medico", min_value=1, step=1, value=1, key="a_doctor")
                durata = st.number_input("Durata (min)", min_value=5, step=5, value=30, key="a_dur")
            with colB:
                giorno = st.date_input("Data", value=date.today(), key="a_data")
                ora = st.time_input("Ora", value=datetime.now().time().replace(second=0, microsecond=0), key="a_ora")
                motivo = st.text_input("Motivo", key="a_reason")

            if st.button("Conferma prenotazione", key="a_submit"):
                payload = {
                    "userId": user_id,
                    "doctorId": a_doctor,
                    "date": datetime.combine(giorno, ora).isoformat(),
                    "durationMinutes": durata,
                    "reason": motivo.strip() or None,
                }
                try:
                    res = _call("POST", "/api/appointments", token, payload)
                    show_result(res)
                    if res.get("ok"):
                        st.write(f"ID appuntamento: **{res['dati']['id']}**")
                except Exception as e:
                    st.error(str(e))

        with st.expander("Sposta / annulla appuntamento"):
            app_id = st.number_input("ID appuntamento", min_value=1, step=1, value=1, key="m_id")
            nuovo_giorno = st.date_input("Nuova data", value=date.today(), key="m_data")
            nuova_ora = st.time_input("Nuova ora", key="m_ora")
            c1, c2 = st.columns(2)
            if c1.button("Sposta", key="m_move"):
                try:
                    res = _call(
                        "PUT",
                        f"/api/appointments/{app_id}",
                        token,
                        {"date": datetime.combine(nuovo_giorno, nuova_ora).isoformat()},
                    )
                    show_result(res)
                except Exception as e:
                    st.error(str(e))
            if c2.button("Annulla appuntamento", key="m_cancel"):
                try:
                    show_result(_call("PATCH", f"/api/appointments/{app_id}/cancel", token))
                except Exception as e:
                    st.error(str(e))

        st.divider()
        st.subheader("Agenda giornaliera")
        ag_doctor = st.number_input("ID medico", min_value=1, step=1, value=1, key="ag_doctor")
        ag_day = st.date_input("Giorno", value=date.today(), key="ag_day")
        try:
            res = _call(
                "GET",
                "/api/appointments/agenda",
                token,
                params={"doctor_id": ag_doctor, "day": ag_day.isoformat()},
            )
            if not res.get("ok"):
                show_result(res)
            elif not res["dati"]:
                st.info("Nessun appuntamento per questo giorno.")
            else:
                for a in res["dati"]:
                    st.write(
                        f"- **{a['date'][11:16]} - {a['end'][11:16]}** | #{a['id']} | "
                        f"Paziente: {a['userId']} | Stato: {a['status']} | Motivo: {a['reason']}"
                    )
        except Exception as e:
            st.error(f"Errore agenda: {e}")



# TAB 3 - Notifiche

with tab3:
    st.subheader("Notifiche pendenti (solo amministratori)")

    token = require_token()
    if token:
        try:
            res = _call("GET", "/api/notifications/pending", token, params={"limit": 200})
            if not res.get("ok"):
                show_result(res)
            elif not res["dati"]:
                st.info("Nessuna notifica pendente.")
            else:
                for n in res["dati"]:
                    st.write(f"[{n['id']}] **{n['tipo']}** | {n['destinatario'] or '-'} - {n['messaggio']}")
        except Exception as e:
            st.error(f"Errore notifiche: {e}")
