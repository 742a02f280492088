#!/usr/bin/env python3
"""Development server runner"""
import os
from mongoback import create_app

if __name__ == '__main__':
    app = create_app('development')

    # Reloader child owns the scheduler in development
    port = int(os.environ.get('PORT', 8090))
    app.run(host='0.0.0.0', port=port, debug=True)
