import configparser
from getpass import getpass

from scheduling_utils import parse_instant_ms


def run_cli_setup_wizard(config_path: str = "config.ini", template_path: str = "config.ini.template") -> None:
    parser = configparser.ConfigParser()
    parser.optionxform = str
    parser.read([template_path, config_path])
    defaults = parser["DEFAULT"]

    def _get(name: str, fallback: str = "") -> str:
        for key, value in defaults.items():
            if key.upper() == name:
                return str(value).strip()
        return fallback

    def _set(name: str, value: str) -> None:
        for key in list(defaults.keys()):
            if key.upper() == name:
                defaults[key] = value
                return
        defaults[name] = value

    def _prompt(name: str, label: str, *, secret: bool = False, required: bool = True, validate=None) -> str:
        current = _get(name)
        prompt = f"{label}"
        if current and not secret:
            prompt += f" [{current}]"
        prompt += ": "
        while True:
            raw = getpass(prompt) if secret else input(prompt)
            value = raw.strip() or current
            if not value and required:
                print("This value is required.")
                continue
            if value and validate is not None:
                try:
                    validate(value)
                except ValueError as exc:
                    print(f"Invalid value: {exc}")
                    continue
            _set(name, value)
            return value

    print("CLI Setup Wizard")
    print("Press Enter to accept defaults shown in brackets.\n")
    _prompt("CONFIRMATION_NUMBER", "Confirmation number")
    _prompt("FIRST_NAME", "Passenger first name")
    _prompt("LAST_NAME", "Passenger last name")
    _prompt(
        "CHECKIN_OPENS_AT",
        "Check-in opens at (ISO-8601, e.g. 2026-05-01T14:30:00Z)",
        validate=parse_instant_ms,
    )
    _prompt("IS_BACKUP", "Run as backup instance? (True/False)", required=False)
    _prompt("SAFETY_MARGIN_MS", "Safety margin in ms", required=False, validate=int)
    _prompt("PROXY_SERVER", "Proxy server (blank for none)", required=False)

    smtp_profiles = {
        "1": ("Gmail", "smtp.gmail.com", "587"),
        "2": ("Outlook", "smtp.office365.com", "587"),
        "3": ("Custom", _get("SMTP_SERVER", "smtp.gmail.com"), _get("SMTP_PORT", "587")),
        "4": ("None", "", ""),
    }
    print("\nResult e-mail (SMTP) provider:")
    print("  1) Gmail  2) Outlook  3) Custom  4) No e-mail")
    profile_choice = input("Choose provider [4]: ").strip() or "4"
    _, smtp_server, smtp_port = smtp_profiles.get(profile_choice, smtp_profiles["4"])
    _set("SMTP_SERVER", smtp_server)
    _set("SMTP_PORT", smtp_port)
    if profile_choice == "3":
        smtp_server = _prompt("SMTP_SERVER", "SMTP server")
        _prompt("SMTP_PORT", "SMTP port", validate=int)
    if smtp_server:
        smtp_user = _prompt("SMTP_USER", "SMTP username")
        _prompt("SMTP_PASS", "SMTP password / app password", secret=True)
        _prompt("NOTIFY_EMAIL", "Notification email", required=False)
        if not _get("NOTIFY_EMAIL") and smtp_user:
            _set("NOTIFY_EMAIL", smtp_user)

    with open(config_path, "w", encoding="utf-8") as handle:
        parser.write(handle)
    print(f"\nSaved configuration to {config_path}")


if __name__ == "__main__":
    run_cli_setup_wizard()
