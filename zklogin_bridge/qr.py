import qrcode
import qrcode.image.svg


def make_login_qr_svg_bytes(start_url: str) -> bytes:
    """SVG QR of a login-start URL, for clients that cannot open a browser."""
    img = qrcode.make(start_url, image_factory=qrcode.image.svg.SvgImage)
    return img.to_string()
