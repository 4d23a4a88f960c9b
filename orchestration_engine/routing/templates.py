# orchestration_engine/routing/templates.py
"""
Caddyfile templates.

Variables use {{name}} placeholders so they never collide with Caddy's
own {placeholder} syntax.
"""

from typing import Any, Dict


def resolve_template(template: str, variables: Dict[str, Any]) -> str:
    for key, value in variables.items():
        template = template.replace(f"{{{{{key}}}}}", str(value))
    return template


MAIN_CADDYFILE = """\
{
    admin {{admin}}
    local_certs
    pki {
        ca local {
            name "{{ca_name}}"
        }
    }
    log {
        output file "{{access_log}}" {
            mode 0644
            roll_size 50mb
            roll_keep 5
        }
        format json
    }
}

import domains/*.caddy

# Catch-all for unmapped names, HTTP only to avoid a wildcard certificate
http://*.{{tld}} {
    respond "No service configured for this domain" 404
}
"""


PROXY_BLOCK = """\
{{scheme}}://{{domain}} {
{{tls}}    reverse_proxy 127.0.0.1:{{port}} {
        header_up X-Forwarded-Proto {{scheme}}
        header_up X-Forwarded-Port {{public_port}}
    }
    handle_errors {
        @502 expression `{http.error.status_code} == 502`
        @503 expression `{http.error.status_code} == 503`
        @504 expression `{http.error.status_code} == 504`
        header Content-Type text/html
        respond @502 `{{error_502}}` 502
        respond @503 `{{error_503}}` 503
        respond @504 `{{error_504}}` 504
    }
}
"""


STATIC_BLOCK = """\
{{scheme}}://{{domain}} {
{{tls}}    root * "{{root}}"
    file_server {
        browse
    }
    handle_errors {
        @404 expression `{http.error.status_code} == 404`
        header Content-Type text/html
        respond @404 `{{error_404}}` 404
    }
}
"""


ERROR_PAGE = (
    "<!DOCTYPE html><html><head><meta charset=\"utf-8\"><title>{{title}}</title>"
    "<style>body{font-family:system-ui,sans-serif;max-width:40rem;margin:4rem auto;color:#333}"
    "code{background:#f3f3f3;padding:.1rem .3rem}</style></head>"
    "<body><h1>{{title}}</h1><p>{{body}}</p></body></html>"
)


LAUNCHD_PLIST = """\
<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>Label</key>
    <string>{{label}}</string>
    <key>ProgramArguments</key>
    <array>
        <string>{{caddy}}</string>
        <string>run</string>
        <string>--config</string>
        <string>{{caddyfile}}</string>
        <string>--adapter</string>
        <string>caddyfile</string>
        <string>--watch</string>
    </array>
    <key>EnvironmentVariables</key>
    <dict>
        <key>XDG_DATA_HOME</key>
        <string>{{data_dir}}</string>
    </dict>
    <key>RunAtLoad</key>
    <true/>
    <key>KeepAlive</key>
    <true/>
    <key>StandardOutPath</key>
    <string>{{log}}</string>
    <key>StandardErrorPath</key>
    <string>{{log}}</string>
</dict>
</plist>
"""


SYSTEMD_UNIT = """\
[Unit]
Description=Local development reverse proxy ({{label}})
After=network.target

[Service]
Environment=XDG_DATA_HOME={{data_dir}}
ExecStart={{caddy}} run --config {{caddyfile}} --adapter caddyfile --watch
Restart=on-failure
AmbientCapabilities=CAP_NET_BIND_SERVICE
StandardOutput=append:{{log}}
StandardError=append:{{log}}

[Install]
WantedBy=multi-user.target
"""
