"""
Notification Backends

Push notifications for prompts via ntfy and Pushover, with a debounce so an
unchanged prompt does not buzz the phone over and over.
"""

import logging
import threading
import time

import requests

from .watcher import hash_prompt

log = logging.getLogger(__name__)

DEFAULT_TITLE = 'Claude Code - Input Needed'
MAX_BODY = 200


def truncate(text, max_length=MAX_BODY):
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + '...'


class Notifier:
    """Debounced notification dispatch.

    ``notify`` decides synchronously whether to send and returns a result
    dict; delivery itself happens on a background thread unless
    ``background`` is False.
    """

    def __init__(self, config, background=True, clock=time.time):
        self.config = config
        self.background = background
        self.clock = clock

        self.last_notification_hash = None
        self.last_notification_time = 0
        self.stats = {'sent': 0, 'debounced': 0, 'failed': 0}
        self._lock = threading.Lock()

        if not self.enabled:
            log.warning("[notify] No ntfy topic or Pushover credentials - notifications disabled")

    @property
    def ntfy(self):
        return self.config['notifications']['ntfy']

    @property
    def pushover(self):
        return self.config['notifications']['pushover']

    @property
    def debounce_seconds(self):
        return self.config['notifications'].get('debounce_seconds', 30)

    @property
    def click_url(self):
        url = self.config['notifications'].get('click_url')
        if url:
            return url
        return f"https://{self.config['server'].get('domain', 'localhost')}/"

    @property
    def enabled(self):
        ntfy_on = self.ntfy.get('enabled') and self.ntfy.get('topic')
        pushover_on = self.pushover.get('enabled') and self.pushover.get('user_key') \
            and self.pushover.get('api_token')
        return bool(ntfy_on or pushover_on)

    # ------------------------------------------------------------------
    # Engine-facing interface
    # ------------------------------------------------------------------

    def on_trigger(self, prompt, options=None):
        """Fire-and-forget notification for a newly detected prompt."""
        lines = [prompt]
        if options:
            lines.append(' / '.join(o.label for o in options))
        return self.notify('\n'.join(lines))

    def on_exit(self, exit_code, sig):
        if not self.config['notifications'].get('notify_on_exit', True):
            return {'success': False, 'reason': 'disabled'}
        detail = f"signal {sig}" if sig else f"code {exit_code}"
        return self.notify(f"Claude Code exited ({detail})", title='Claude Code - Exited',
                           priority='default', force=True)

    def on_error(self, message):
        return self.notify(message, title='Claude Code - Error', priority='default', force=True)

    def reset_debounce(self):
        """Forget the last prompt, e.g. after the user answered it."""
        with self._lock:
            self.last_notification_hash = None
            self.last_notification_time = 0

    def get_stats(self):
        with self._lock:
            return dict(self.stats)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def notify(self, prompt, title=None, priority=None, force=False):
        if not self.enabled:
            return {'success': False, 'reason': 'no_topic'}

        prompt_hash = hash_prompt(prompt)
        now = self.clock()

        with self._lock:
            since_last = now - self.last_notification_time
            if not force and prompt_hash == self.last_notification_hash \
                    and since_last < self.debounce_seconds:
                self.stats['debounced'] += 1
                log.debug(f"[notify] Debounced (same prompt, {since_last:.1f}s since last)")
                return {'success': False, 'reason': 'debounced'}
            self.last_notification_hash = prompt_hash
            self.last_notification_time = now

        title = title or DEFAULT_TITLE
        priority = priority or self.ntfy.get('priority', 'high')
        body = truncate(prompt)

        if self.background:
            threading.Thread(target=self._deliver, args=(body, title, priority), daemon=True).start()
            return {'success': True, 'queued': True}
        return self._deliver(body, title, priority)

    def _deliver(self, body, title, priority):
        results = [self.send_ntfy(body, title, priority), self.send_pushover(body, title)]
        attempted = [r for r in results if r is not None]
        ok = any(attempted)
        with self._lock:
            if ok:
                self.stats['sent'] += 1
            else:
                self.stats['failed'] += 1
        return {'success': ok}

    def send_ntfy(self, message, title, priority='high'):
        """Send notification via ntfy. Returns None when ntfy is disabled."""
        cfg = self.ntfy
        if not cfg.get('enabled') or not cfg.get('topic'):
            return None

        payload = {
            "topic": cfg['topic'],
            "title": title,
            "message": message,
            "priority": 4 if priority == 'high' else 3,
            "tags": ["robot"],
            "click": self.click_url,
        }
        headers = {}
        if cfg.get('token'):
            headers['Authorization'] = f"Bearer {cfg['token']}"

        try:
            resp = requests.post(cfg['server'].rstrip('/'), json=payload, headers=headers, timeout=10)
        except requests.RequestException as e:
            log.error(f"[ntfy] Error: {e}")
            return False

        if resp.status_code == 200:
            log.info(f"[ntfy] Sent notification: \"{message[:50]}\"")
            return True
        log.error(f"[ntfy] Server returned {resp.status_code}: {resp.text}")
        return False

    def send_pushover(self, message, title):
        """Send notification via Pushover. Returns None when Pushover is disabled."""
        cfg = self.pushover
        if not cfg.get('enabled'):
            return None
        if not cfg.get('user_key') or not cfg.get('api_token'):
            log.warning("[pushover] Missing credentials")
            return None

        try:
            resp = requests.post(
                "https://api.pushover.net/1/messages.json",
                data={
                    "token": cfg['api_token'],
                    "user": cfg['user_key'],
                    "title": title,
                    "message": message,
                    "priority": 1,
                    "url": self.click_url,
                    "url_title": "Open Control Panel",
                },
                timeout=10,
            )
        except requests.RequestException as e:
            log.error(f"[pushover] Error: {e}")
            return False

        if resp.status_code == 200:
            log.info("[pushover] Notification sent")
            return True
        log.error(f"[pushover] Server returned {resp.status_code}: {resp.text}")
        return False

    def test(self):
        return self.notify('Test notification from Claude Code Mobile Controller',
                           title='Claude Code - Test', priority='default', force=True)
