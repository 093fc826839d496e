#
# A tour of ScaledValue arithmetic.  Run with "python -m toobig.demo".
#

from toobig import ScaledValue


def section(title):
    print()
    print(title)
    print('-' * len(title))


def main():
    section('1. Basic operations')
    a = ScaledValue.from_string('1.5e100')
    b = ScaledValue.from_string('2.5e100')
    print(f'{a} + {b} = {a + b}')
    print(f'{b} - {a} = {b - a}')
    print(f'{a} * {b} = {a * b}')
    print(f'{a} / {b} = {a / b}')

    section('2. Beyond the range of a float')
    huge = ScaledValue.from_string('1e1000')
    print(f'{huge} * 2 = {huge * 2}')
    print(f'{huge} as a float: {huge.to_float()}')

    section('3. Nested exponents')
    nested = ScaledValue.from_string('1e1e100')
    print(f'1e1e100 = {nested}')
    print(f'{nested} * {nested} = {nested * nested}')

    section('4. Logarithms')
    print(f'ln(2) = {ScaledValue(2.0).ln()}')
    print(f'log10(1000) = {ScaledValue(1000.0).log10()}')
    print(f'log10({nested}) = {nested.log10()}')

    section('5. Powers')
    print(f'2^10 = {ScaledValue(2.0) ** 10}')
    print(f'sqrt({huge}) = {huge.sqrt()}')
    print(f'exp(1000) = {ScaledValue(1000.0).exp()}')

    section('6. Comparisons')
    small = ScaledValue.from_string('1e50')
    large = ScaledValue.from_string('1e100')
    print(f'{small} < {large}: {small < large}')
    print(f'max({small}, {large}) = {small.max(large)}')

    section('7. Parsing')
    print(f"'1.23e456' parses as {ScaledValue.from_string('1.23e456')}")

    section('8. Limited precision')
    print(f'{large} + {small} = {large + small}')
    print(f"{large} + 1e90 = {large + ScaledValue.from_string('1e90')}")


if __name__ == '__main__':
    main()
