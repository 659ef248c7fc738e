"""
Stand-in for the yt-dlp CLI used by the tests.

Understands the arguments ExtractionClient passes and prints yt-dlp style
output. FAKE_YTDLP_MODE selects the behaviour:

    ok       progress ticks, merge, non-empty output (default)
    fail     non-zero exit with an ERROR line
    bot      non-zero exit with a bot-protection ERROR line
    empty    zero exit with an empty output file
    missing  zero exit without any output file
    single   no merge step, output keeps its own extension (.webm)

FAKE_YTDLP_DELAY sets the pause between progress ticks in seconds.
"""

import os
import sys
import time

CONTENT = b'\x00\x00\x00\x18ftypmp42' + b'x' * 4096


def main(argv):
    template = argv[argv.index('-o') + 1]
    if '--audio-format' in argv:
        ext = argv[argv.index('--audio-format') + 1]
        postprocessor = 'ExtractAudio'
    else:
        ext = argv[argv.index('--merge-output-format') + 1]
        postprocessor = 'Merger'

    mode = os.environ.get('FAKE_YTDLP_MODE', 'ok')
    delay = float(os.environ.get('FAKE_YTDLP_DELAY', '0'))

    print(f'[youtube] Extracting URL: {argv[-1]}', flush=True)

    if mode == 'bot':
        print("ERROR: [youtube] abc: Sign in to confirm you're not a bot", flush=True)
        return 1
    if mode == 'fail':
        print('ERROR: [youtube] abc: Requested format is not available', flush=True)
        return 1

    stream_path = template.replace('%(ext)s', 'f137.webm' if mode != 'single' else 'webm')
    print(f'[download] Destination: {stream_path}', flush=True)
    for percent, done in ((0.0, '0.00'), (25.0, '1.00'), (50.0, '2.00'), (75.0, '3.00'), (100.0, '4.00')):
        print(f'[download] {percent:5.1f}% {done}MiB of 4.00MiB', flush=True)
        time.sleep(delay)

    if mode == 'missing':
        return 0

    if mode == 'single':
        with open(stream_path, 'wb') as f:
            f.write(CONTENT)
        return 0

    final_path = template.replace('%(ext)s', ext)
    if postprocessor == 'Merger':
        print(f'[Merger] Merging formats into "{final_path}"', flush=True)
    else:
        print(f'[ExtractAudio] Destination: {final_path}', flush=True)
    time.sleep(delay)

    with open(final_path, 'wb') as f:
        if mode != 'empty':
            f.write(CONTENT)
    return 0


if __name__ == '__main__':
    sys.exit(main(sys.argv[1:]))
