from __future__ import annotations

import re

# Block detection
MOBILE_CAPTCHA = "#captcha, #captcha_submit, form[action*='/checkpoint/']"
DESKTOP_CAPTCHA = "#captcha, #captcha-recaptcha, iframe[src*='captcha']"
MOBILE_META = "meta[name='viewport']"
MOBILE_BODY_CLASS = "body.touch"
ERROR_PAGE_TITLE = "Error"
LOGIN_REDIRECT_RE = re.compile(r"[?&]next=|/login(?:\.php|/)", re.IGNORECASE)

# Post page
POST_CONTAINER = "#contentArea"
USER_CONTENT = ".userContent"
ASSET_IMAGE = "img[src*='scontent']"
LIGHTBOX_ANCHOR = "a[rel='theater']"
LINK_REDIRECT = "a[href*='l.facebook.com/l.php?u=']"
LINK_THUMB = ".scaledImageFitWidth"
LINK_DOMAIN = ".ellipsis"
LINK_TEXT = ".accessible_elem"

# Video sub-page
COOKIE_ACCEPT = (
    "[data-testid='cookie-policy-dialog-accept-button'],"
    "[data-cookiebanner='accept_button'],"
    "#accept-cookie-banner-label"
)
VIDEO_POSTER = ".widePic > div > div"
VIDEO_ELEMENT = "video"
