import configparser

from flask import Flask, render_template, request

app = Flask(__name__)
app.config.setdefault("CONFIG_PATH", "config.ini")

CONFIG_KEYS = [
    'CONFIRMATION_NUMBER', 'FIRST_NAME', 'LAST_NAME', 'CHECKIN_OPENS_AT',
    'IS_BACKUP', 'SAFETY_MARGIN_MS', 'BACKUP_OFFSET_MS', 'NTP_SERVER',
    'PROXY_SERVER', 'SMTP_SERVER', 'SMTP_PORT', 'SMTP_USER', 'SMTP_PASS',
    'NOTIFY_EMAIL',
]
BOOLEAN_KEYS = {'IS_BACKUP'}


def _read_config(path: str) -> configparser.ConfigParser:
    config = configparser.ConfigParser()
    config.optionxform = str
    config.read(path)
    return config


@app.route('/', methods=['GET', 'POST'])
def index():
    path = app.config["CONFIG_PATH"]
    config = _read_config(path)

    if request.method == 'POST':
        for key in CONFIG_KEYS:
            if key in BOOLEAN_KEYS:
                value = 'True' if request.form.get(key) else 'False'
            else:
                value = request.form.get(key, '').strip()
            config['DEFAULT'][key] = value
        with open(path, 'w', encoding='utf-8') as f:
            config.write(f)
        return "Configuration saved successfully!"

    current = {k: config['DEFAULT'].get(k, '') for k in CONFIG_KEYS}
    return render_template('index.html', current=current, booleans=BOOLEAN_KEYS)


if __name__ == '__main__':
    app.run(debug=True)
