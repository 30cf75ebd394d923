import json
from pathlib import Path

import yaml

DEFAULT_PATH = Path("casino_catalog.json")


def prompt_weight(name: str, current: float) -> float:
    while True:
        raw = input(f"{name} [{current:g}] -> ").strip()
        if raw == "":
            return current
        try:
            weight = float(raw)
        except ValueError:
            print("Please enter a positive number, or press Enter to keep current.")
            continue
        if weight > 0:
            return weight
        print("Weights must be greater than zero. Disable the item instead of zeroing it.")


def load(path: Path) -> dict:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yml", ".yaml"):
        return yaml.safe_load(text) or {}
    return json.loads(text)


def dump(path: Path, data: dict) -> None:
    if path.suffix.lower() in (".yml", ".yaml"):
        path.write_text(yaml.safe_dump(data, allow_unicode=True, sort_keys=False), encoding="utf-8")
    else:
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


def main() -> None:
    config_path = Path(input(f"Catalog file [{DEFAULT_PATH}] -> ").strip() or DEFAULT_PATH)
    if not config_path.exists():
        raise SystemExit(f"{config_path} not found. Run script from repo root.")

    data = load(config_path)
    draws = data.get("draw") if isinstance(data, dict) else None
    if not isinstance(draws, list):
        raise SystemExit("Invalid catalog: 'draw' must be a list.")

    total = sum(float(entry.get("weight", 1) or 0) for entry in draws if isinstance(entry, dict))
    print(f"Editing {len(draws)} draw item(s); current total weight {total:g}.")

    for entry in draws:
        if not isinstance(entry, dict):
            continue
        name = entry.get("name") or "?"
        entry["weight"] = prompt_weight(name, float(entry.get("weight", 1) or 1))

    total = sum(float(entry.get("weight", 1)) for entry in draws if isinstance(entry, dict))
    for entry in draws:
        if isinstance(entry, dict):
            print(f"  {entry.get('name')}: {float(entry['weight']) / total * 100:.3f}%")

    dump(config_path, data)
    print("Updated", config_path)


if __name__ == "__main__":
    main()
