tyre_compounds_ints = {
  "SOFT": 0,
  "MEDIUM": 1,
  "HARD": 2,
  "INTERMEDIATE": 3,
  "WET": 4,
}

# OpenF1 and the timing feed disagree on a few names
COMPOUND_ALIASES = {
  "INTER": "INTERMEDIATE",
  "INTERS": "INTERMEDIATE",
  "WETS": "WET",
}

def normalize_compound(compound_str):
  if not compound_str:
    return "UNKNOWN"
  name = str(compound_str).strip().upper()
  name = COMPOUND_ALIASES.get(name, name)
  return name if name in tyre_compounds_ints else "UNKNOWN"

def get_tyre_compound_int(compound_str):
  return int(tyre_compounds_ints.get(normalize_compound(compound_str), -1))

def get_tyre_compound_str(compound_int):
  for k, v in tyre_compounds_ints.items():
    if v == compound_int:
      return k
  return "UNKNOWN"

def find_active_stint(stints, entity_id, lap_number):
  """Stint covering lap_number for one driver; open-ended stints have lap_end None."""
  for stint in stints:
    if stint.entity_id != entity_id or stint.lap_start is None:
      continue
    if stint.lap_start <= lap_number and (stint.lap_end is None or stint.lap_end >= lap_number):
      return stint
  return None

def tyre_age(stint, lap_number):
  return (lap_number - stint.lap_start) + (stint.tyre_age_at_start or 0)
