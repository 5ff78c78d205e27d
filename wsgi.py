"""
WSGI entry point, used by gunicorn.

Runs are executed by an RQ worker listening on the `ch_lead_gen` queue:
    rq worker ch_lead_gen --url "$REDIS_URL"
"""
from ch_lead_gen import create_app

app = create_app()

if __name__ == '__main__':
    import os
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 8080)))
