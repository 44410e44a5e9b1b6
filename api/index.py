import os
import sys
import traceback

# Add ROOT to sys.path (to find the 'agency_portal' package)
root_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if root_dir not in sys.path:
    sys.path.append(root_dir)

try:
    from agency_portal.app import create_app

    app = create_app()

except Exception as e:
    # Diagnostic fail-safe so a broken deploy still answers with the boot error
    from flask import Flask

    boot_error = str(e)
    boot_traceback = traceback.format_exc()
    app = Flask(__name__)

    @app.route('/', defaults={'path': ''})
    @app.route('/<path:path>')
    def catch_all(path):
        return f"""
        <html>
        <head><title>Boot Error</title></head>
        <body style="font-family: monospace; padding: 20px;">
            <h1 style="color: red;">CRITICAL BOOT ERROR</h1>
            <p>The application could not start due to an error during import.</p>

            <h3>Exception:</h3>
            <pre style="background: #eee; padding: 10px;">{boot_error}</pre>

            <h3>Traceback:</h3>
            <pre style="background: #eee; padding: 10px;">{boot_traceback}</pre>

            <h3>Debug Context:</h3>
            <ul>
                <li><strong>CWD:</strong> {os.getcwd()}</li>
                <li><strong>APP_SETTINGS:</strong> {os.environ.get('APP_SETTINGS', 'development')}</li>
            </ul>
        </body>
        </html>
        """, 500
