"""
Sample challenge pages shared by the test modules.

The markup mirrors the shape of real interstitial pages closely enough for
the detector's matchers and the solvers' marker extraction.
"""

from challenge_pipeline.models import HttpResponse

TURNSTILE_SITE_KEY = "0x4AAAAAAAB1234567890abcdef"
V2_SITE_KEY = "10000000-ffff-ffff-ffff-000000000001"

CF_HEADERS = {"server": "cloudflare", "cf-ray": "8a1b2c3d4e5f6a7b-FRA"}


def iuam_page(puzzle: str = "5+3*2", delay_ms: int = 4000, include_pass: bool = True) -> str:
    pass_input = '<input type="hidden" name="pass" value="1712345678.123-abcDEF"/>' if include_pass else ""
    return f"""<!DOCTYPE html>
<html>
<head><title>Just a moment...</title></head>
<body>
<p>Checking your browser before accessing example.com.</p>
<form id="challenge-form" action="/?__cf_chl_f_tk=iuamtoken123" method="POST">
<input type="hidden" name="r" value="r-token-1"/>
<input type="hidden" name="jschl_vc" value="0f1e2d3c4b5a"/>
{pass_input}
<input type="hidden" id="jschl-answer" name="jschl_answer"/>
</form>
<script type="text/javascript">
  (function(){{
    var s,t,o,p,b,r,e,a,k,i,n,g,f;
    setTimeout(function(){{
      a = document.getElementById('jschl-answer');
      a.value = {puzzle};
      f.submit();
    }}, {delay_ms});
  }})();
</script>
</body>
</html>"""


def js_v2_page(with_captcha: bool = False) -> str:
    captcha = ""
    if with_captcha:
        captcha = (
            '<div id="cf-hcaptcha-container" data-sitekey="' + V2_SITE_KEY + '"></div>\n'
            '<input type="hidden" name="__cf_chl_captcha_tk__" value="captcha-tk"/>'
        )
    return f"""<!DOCTYPE html>
<html>
<head><title>Just a moment...</title></head>
<body>
<form id="challenge-form" action="/?__cf_chl_rt_tk=v2rttoken" method="POST">
<input type="hidden" name="r" value="v2-r-token"/>
{captcha}
</form>
<script>
window._cf_chl_opt = {{"cvId": "2", "cType": "non-interactive", "chlPageData": "page-data-abc"}};
</script>
<script>
(function(){{
  var cpo = document.createElement('script');
  cpo.src = '/cdn-cgi/challenge-platform/h/b/orchestrate/jsch/v1?ray=8a1b2c3d';
  window._cf_chl_answer = String(parseInt(window._cf_chl_opt.cvId, 10) * 1000 + location.hostname.length);
}})();
</script>
</body>
</html>"""


def managed_v3_page(script: str = "") -> str:
    script = script or "var spin = 0;\nwhile (true) { spin = (spin + 1) % 7; }"
    return f"""<!DOCTYPE html>
<html>
<head><title>Just a moment...</title></head>
<body class="no-js">
<div class="cf-browser-verification" data-ray="8a1b2c3d4e5f6a7b"></div>
<form id="challenge-form" action="/?__cf_chl_tk=v3token" method="POST">
<input type="hidden" name="r" value="v3-r-token"/>
<input type="hidden" name="md" value="v3-md"/>
</form>
<script>
window._cf_chl_opt = {{"cvId": "3", "cType": "managed"}};
window._cf_chl_ctx = {{"cNounce": "41923"}};
</script>
<script src="/cdn-cgi/challenge-platform/h/g/orchestrate/managed/v1?ray=8a1b2c3d"></script>
<script>
window._cf_chl_enter();
{script}
</script>
</body>
</html>"""


def turnstile_page() -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
<title>Verify you are human</title>
<script src="https://challenges.cloudflare.com/turnstile/v0/api.js" async defer></script>
</head>
<body>
<form action="/login/verify" method="POST">
<div class="cf-turnstile" data-sitekey="{TURNSTILE_SITE_KEY}"></div>
<input type="hidden" name="md" value="turnstile-md"/>
</form>
</body>
</html>"""


def rate_limit_page() -> str:
    return """<!DOCTYPE html>
<html>
<head><title>Rate Limited</title></head>
<body>
<span class="cf-error-code">1015</span>
<p>You are being rate limited. Please try again in 2 minutes.</p>
</body>
</html>"""


def access_denied_page() -> str:
    return """<!DOCTYPE html>
<html>
<head><title>Attention Required!</title></head>
<body>
<span class="cf-error-code">1020</span>
<p>Access denied. The site owner has banned your access based on your browser's signature.</p>
</body>
</html>"""


def ok_page() -> str:
    return "<!DOCTYPE html><html><head><title>Welcome</title></head><body><h1>Hello</h1></body></html>"


def response(status_code: int, body: str, url: str = "https://example.com/page", headers=None) -> HttpResponse:
    merged = dict(CF_HEADERS)
    merged.update({k.lower(): v for k, v in (headers or {}).items()})
    return HttpResponse(status_code=status_code, headers=merged, body=body, url=url, elapsed_ms=120.0)
