from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PortalSelectors:
    """
    The portal is a web UI; selectors may change over time.
    Keep all UI selectors/text hooks here for easy maintenance.
    """

    # Login
    username_input: str = "#userId"
    password_input: str = "#password"
    login_submit: str = 'button[type="submit"]'
    login_url_markers: tuple[str, ...] = ("login", "authenticate")

    # Post-login status detection
    dashboard_marker: str = ".top-applications, .av-dashboard, .dashboard-container"
    challenge_form: str = (
        'form[name="backupCodeForm"], form[name="authenticatorCodeForm"], '
        'input[type="radio"][value*="authenticator"], input[type="radio"][value*="backup"]'
    )
    cookie_consent_heading_text: str = "Cookie Consent & Preferences"
    cookie_consent_accept: str = 'button.primary-button, button:has-text("Accept All Cookies")'
    cookie_consent_accept_text: str = "Accept All Cookies"

    # Second factor: option selection
    challenge_radio: str = 'input[type="radio"]'
    authenticator_radio: str = (
        'input[type="radio"][value*="authenticator"], input[type="radio"][id*="authenticator"], '
        'input[type="radio"][name*="authenticator"]'
    )
    backup_code_radio: str = (
        'input[type="radio"][value*="backup"], input[type="radio"][id*="backup"], '
        'input[type="radio"][name*="backup"]'
    )
    authenticator_label_text: str = "authenticator app"
    backup_code_label_text: str = "backup code"
    challenge_continue: str = 'button[type="submit"]'

    # Second factor: code entry + submit (ordered: most specific first)
    code_inputs: tuple[str, ...] = (
        'input[name="code"]',
        'input[name="authenticatorCode"]',
        'input[name="backupCode"]',
        'input[type="text"]',
    )
    code_submit_buttons: tuple[str, ...] = (
        'button[type="submit"]',
        'button:has-text("Continue")',
        'button:has-text("Submit")',
        'button:has-text("Verify")',
        "button.btn-primary",
    )
    challenge_error_banner: str = ".alert-danger, .error-message"

    # Popups that can block clicks after login
    popup_close_buttons: tuple[str, ...] = (
        'button[aria-label="Close"]',
        "button.close",
        ".modal-close",
        ".dialog-close",
        '.modal-header button:has-text("×")',
        'button:has-text("Dismiss")',
    )

    # Post-login navigation into the care application
    application_tile_text: str = "Care Central"
    application_tile_image_hint: str = "wellpoint"
    application_url_marker: str = "care-central"
    application_frame_selector: str = "#newBodyFrame"
    application_frame_name: str = "newBody"
    organization_dropdown: str = "#organizations"
    provider_dropdown: str = "#providerName"
    dropdown_option: str = ".av__option"
    selection_submit: str = "button.btn.btn-primary"
    referrals_tab: str = 'button[data-id="referral"]'
    referrals_tab_text: str = "Referrals"

    # Referral list (UI-rendered)
    referral_card: str = ".incoming-referral-info"
    card_member_name: str = ".memName"
    card_service: str = ".serviceCol"
    card_region: str = ".regionCol"
    card_county: str = ".countyCol"
    card_program: str = ".programCol"
    card_status: str = ".statusCol .badge"
    card_detail_row: str = ".more-detail-section .d-flex"
    card_detail_header: str = ".moreDetailsHeader"
    card_detail_value: str = ".moreDetailsData"
