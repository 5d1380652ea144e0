from collections import namedtuple
import json
import math
import warnings

from hrtkit import medications, pharma
from hrtkit.medications import Ester, LabUnit, Route


ImportedData = namedtuple("ImportedData", ["events", "weight", "labResults"])

_ROUTES = {r.value for r in Route}
_ESTERS = {e.value for e in Ester}
_UNITS = {u.value for u in LabUnit}


def _toNumber(value):
    """Loose numeric coercion of a JSON value. Returns nan if impossible."""

    if isinstance(value, bool) or value is None:
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _drop(kind, i, reason):
    warnings.warn(
        f"Dropping imported {kind} #{i}: {reason}.",
        RuntimeWarning,
    )


##########################
### Import Sanitization ###


def sanitizeImportedEvents(raw):
    """
    Turn untrusted JSON dose records into DoseEvents.

    Records are dropped with a RuntimeWarning when they aren't objects,
    have an unknown route, a non-finite time or a negative dose, or
    pair a route with a compound it can't deliver. A non-finite dose
    becomes 0, an unknown ester becomes E2, a missing id is generated,
    and extras keep only the keys that apply to the route.

    Raises ValueError if raw isn't a list."""

    if not isinstance(raw, list):
        raise ValueError(
            f"Expecting a list of dose events, but got {type(raw)}."
        )

    events = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            _drop("event", i, "not an object")
            continue

        route = item.get("route")
        if not isinstance(route, str) or route not in _ROUTES:
            _drop("event", i, f"unknown route '{route}'")
            continue

        time_h = _toNumber(item.get("timeH"))
        if not math.isfinite(time_h):
            _drop("event", i, "non-finite timeH")
            continue

        dose = _toNumber(item.get("doseMG"))
        ester = item.get("ester")
        if not isinstance(ester, str) or ester not in _ESTERS:
            ester = Ester.E2
        extras = item.get("extras")
        kwargs = {}
        if isinstance(item.get("id"), str):
            kwargs["id"] = item["id"]

        try:
            medications.checkSupported(route, ester)
            event = pharma.DoseEvent(
                route=route,
                ester=ester,
                timeH=time_h,
                doseMG=dose if math.isfinite(dose) else 0.0,
                extras=extras if isinstance(extras, dict) else {},
                **kwargs,
            )
        except ValueError as err:
            _drop("event", i, str(err))
            continue

        events.append(event)

    return events


def sanitizeImportedLabResults(raw):
    """
    Turn untrusted JSON lab records into LabResults.

    Returns an empty list if raw isn't a list. Records with a
    non-finite time or value are dropped with a RuntimeWarning, and an
    unknown unit becomes pmol/l."""

    if not isinstance(raw, list):
        return []

    results = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            _drop("lab result", i, "not an object")
            continue

        time_h = _toNumber(item.get("timeH"))
        value = _toNumber(item.get("concValue"))
        if not (math.isfinite(time_h) and math.isfinite(value)):
            _drop("lab result", i, "non-finite timeH or concValue")
            continue

        unit = item.get("unit")
        kwargs = {}
        if isinstance(item.get("id"), str):
            kwargs["id"] = item["id"]

        results.append(
            pharma.LabResult(
                timeH=time_h,
                concValue=value,
                unit=unit
                if isinstance(unit, str) and unit in _UNITS
                else LabUnit.pmolL,
                **kwargs,
            )
        )

    return results


def processImportedData(parsed):
    """
    Sanitize a parsed import payload.

    The payload is either a bare list of dose records, or an object with
    any of events, weight and labResults. Returns an ImportedData whose
    weight is None when no valid weight was present.

    Raises ValueError when nothing in the payload is usable, including
    for encrypted payloads which must be decrypted before import."""

    events = []
    weight = None
    lab_results = []

    if isinstance(parsed, list):
        events = sanitizeImportedEvents(parsed)
    elif isinstance(parsed, dict):
        if parsed.get("encrypted"):
            raise ValueError("Encrypted data must be decrypted before import.")
        if isinstance(parsed.get("events"), list):
            events = sanitizeImportedEvents(parsed["events"])
        w = parsed.get("weight")
        if (
            not isinstance(w, bool)
            and isinstance(w, (int, float))
            and math.isfinite(w)
            and w > 0
        ):
            weight = float(w)
        lab_results = sanitizeImportedLabResults(parsed.get("labResults"))

    if not events and weight is None and not lab_results:
        raise ValueError("No valid entries")

    return ImportedData(events, weight, lab_results)


##########################
### JSON Serialization ###


def eventToRecord(event):
    return {
        "id": event.id,
        "route": event.route.value,
        "timeH": event.timeH,
        "doseMG": event.doseMG,
        "ester": event.ester.value,
        "extras": medications.modifiersToExtras(event.extras),
    }


def labResultToRecord(result):
    return {
        "id": result.id,
        "timeH": result.timeH,
        "concValue": result.concValue,
        "unit": result.unit.value,
    }


def dumps(events, weight=None, labResults=(), **kwargs):
    """Serialize a dose history to JSON text. kwargs go to json.dumps."""

    payload = {"events": [eventToRecord(e) for e in events]}
    if weight is not None:
        payload["weight"] = weight
    payload["labResults"] = [labResultToRecord(r) for r in labResults]
    return json.dumps(payload, **kwargs)


def loads(text):
    """Parse and sanitize JSON text (see processImportedData)."""

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as err:
        raise ValueError(f"Import isn't valid JSON: {err}") from err
    return processImportedData(parsed)
